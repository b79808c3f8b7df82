from dataclasses import dataclass
from typing import Optional

import yaml
from sqlalchemy.exc import SQLAlchemyError

from .log import get_logger
from .models import Language

logger = get_logger("judge.languages")


@dataclass(frozen=True)
class LanguageConfig:
    image: str
    run_cmd: str
    file_name: str
    compile_cmd: Optional[str] = None

    @property
    def compile_first(self) -> bool:
        return bool(self.compile_cmd)


def load_catalog(path: str) -> list:
    """languages.yamlの言語一覧を読み込む"""
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    return data.get('languages', [])


def image_table(catalog: list) -> dict:
    return {int(entry['id']): entry['image'] for entry in catalog if entry.get('image')}


class LanguageRegistry:
    """
    言語IDからコンテナイメージ・コンパイル/実行コマンドを引く。
    アーカイブ済み・イメージ未登録の言語は見つからない扱い
    """

    def __init__(self, session_factory, images: dict):
        self.session_factory = session_factory
        self.images = dict(images)

    def lookup(self, language_id: int) -> Optional[LanguageConfig]:
        image = self.images.get(language_id)
        if not image:
            return None
        try:
            with self.session_factory() as db:
                language = db.query(Language).filter(
                    Language.id == language_id,
                    Language.is_archived.is_(False),
                ).first()
        except SQLAlchemyError as e:
            logger.error("language lookup failed [id=%s]: %s", language_id, e)
            return None
        if not language or not language.run_cmd:
            return None
        return LanguageConfig(
            image=image,
            run_cmd=language.run_cmd,
            file_name=language.source_file,
            compile_cmd=language.compile_cmd or None,
        )
