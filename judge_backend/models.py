from datetime import datetime, timezone

from sqlalchemy import (Boolean, Column, DateTime, Float, ForeignKey, Integer,
                        LargeBinary, String, Text)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class Language(Base):
    __tablename__ = 'languages'
    id = Column(Integer, primary_key=True)
    name = Column(String(64), nullable=False)
    is_archived = Column(Boolean, nullable=False, default=False)
    source_file = Column(String(64), nullable=False)
    compile_cmd = Column(Text, nullable=True)
    run_cmd = Column(Text, nullable=False)


class Status(Base):
    __tablename__ = 'statuses'
    id = Column(Integer, primary_key=True)
    name = Column(String(32), nullable=False, unique=True)


class Submission(Base):
    __tablename__ = 'submissions'
    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String(64), nullable=False, unique=True, index=True)

    # 入力
    source_code = Column(Text, nullable=False)
    language_id = Column(Integer, ForeignKey('languages.id'), nullable=False)
    stdin = Column(Text)
    expected_output = Column(Text)
    command_line_arguments = Column(String(512))
    callback_url = Column(Text)
    additional_files = Column(LargeBinary)

    # 制限値の上書き（NULLはデフォルト値）
    cpu_time_limit = Column(Float)
    cpu_extra_time = Column(Float)
    wall_time_limit = Column(Float)
    memory_limit = Column(Integer)
    stack_limit = Column(Integer)
    max_processes_and_or_threads = Column(Integer)
    max_file_size = Column(Integer)
    number_of_runs = Column(Integer)
    redirect_stderr_to_stdout = Column(Boolean, default=False)
    enable_network = Column(Boolean, default=False)

    # 実行結果
    stdout = Column(Text)
    stderr = Column(Text)
    time = Column(Float)
    memory = Column(Integer)
    exit_code = Column(Integer)
    message = Column(Text)

    status_id = Column(Integer, ForeignKey('statuses.id'), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    queued_at = Column(DateTime(timezone=True))
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))

    language = relationship(Language)
    status = relationship(Status)


class WorkflowStep(Base):
    """ワークフローのステップ記録（submission_id + step名で一意）。completed_atが空なら実行中"""
    __tablename__ = 'workflow_steps'
    submission_id = Column(Integer, ForeignKey('submissions.id'), primary_key=True)
    step = Column(String(64), primary_key=True)
    output = Column(Text)
    claimed_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True))
