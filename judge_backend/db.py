from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base, Language, Status
from .status import STATUS_NAMES


def make_engine(database_url: str):
    if database_url.startswith('sqlite'):
        # テスト用のインメモリDBはスレッド間で同じ接続を共有する
        return create_engine(
            database_url,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine, session_factory, catalog=()):
    """
    テーブル作成とステータス・言語マスタの投入（何度実行しても同じ結果）
    """
    Base.metadata.create_all(bind=engine)
    with session_factory() as db:
        for status_id, name in STATUS_NAMES.items():
            db.merge(Status(id=int(status_id), name=name))
        for entry in catalog:
            db.merge(Language(
                id=int(entry['id']),
                name=entry['name'],
                is_archived=bool(entry.get('archived', False)),
                source_file=entry['source_file'],
                compile_cmd=entry.get('compile_cmd'),
                run_cmd=entry['run_cmd'],
            ))
        db.commit()
