import os

import yaml
from dotenv import load_dotenv

load_dotenv(override=False)

PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))


def read_secret(path, default=None):
    try:
        with open(path, 'r') as f:
            return f.read().strip()
    except OSError:
        return default


def load_config(path=None) -> dict:
    """
    config.yamlを読み込む。パス指定がなければ JUDGE_CONFIG > パッケージ直下 の順で探す
    """
    path = path or os.getenv('JUDGE_CONFIG') or os.path.join(PACKAGE_DIR, 'config.yaml')
    if not os.path.exists(path):
        return {}
    with open(path, 'r') as f:
        return yaml.safe_load(f) or {}


def resolve_path(path: str) -> str:
    # 相対パスはパッケージディレクトリ基準
    if os.path.isabs(path):
        return path
    return os.path.join(PACKAGE_DIR, path)


def get_db_url(config: dict) -> str:
    """
    DB接続URLを優先度: DATABASE_URL > secrets > config.yaml > default で取得
    """
    url = os.getenv('DATABASE_URL') or config.get('database_url')
    if url:
        return url

    dev_mode = os.getenv('DEV', '').lower() == 'true'
    if dev_mode:
        db_user = config.get('db_user', 'devuser')
        db_password = config.get('db_password', 'devpass')
        db_name = config.get('db_name', 'devdb')
        db_host = config.get('db_host', 'localhost')
        db_port = str(config.get('db_port', '5432'))
    else:
        db_user = read_secret('/run/secrets/DBUSER', 'devuser')
        db_password = read_secret('/run/secrets/DBPASSWORD', 'devpass')
        db_name = read_secret('/run/secrets/DBNAME', 'devdb')
        db_host = config.get('db_host', 'db')
        db_port = str(config.get('db_port', '5432'))
    return f"postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"
