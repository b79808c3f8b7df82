from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

LIMIT_FIELDS = (
    'cpu_time_limit',
    'cpu_extra_time',
    'wall_time_limit',
    'memory_limit',
    'stack_limit',
    'max_processes_and_or_threads',
    'max_file_size',
)


class ExecutionResult(BaseModel):
    stdout: str = ''
    stderr: str = ''
    exit_code: Optional[int] = 1
    time: float = 0
    memory: int = 0
    error: Optional[str] = None


class Limits(BaseModel):
    """実行時の制限値（時間は秒、メモリ・スタック・ファイルサイズはKB）"""
    cpu_time_limit: float = 2
    cpu_extra_time: float = 0.5
    wall_time_limit: float = 5
    memory_limit: int = 128000
    stack_limit: int = 64000
    max_processes_and_or_threads: int = 60
    max_file_size: int = 1024
    enable_network: bool = False


def resolve_limits(overrides: dict, defaults: dict) -> Limits:
    """提出ごとの上書き値をデフォルト値にマージする（Noneは未指定扱い）"""
    values = dict(defaults or {})
    for key in LIMIT_FIELDS:
        if overrides.get(key) is not None:
            values[key] = overrides[key]
    values['enable_network'] = bool(overrides.get('enable_network'))
    return Limits(**values)


class CreateSubmissionRequest(BaseModel):
    source_code: str = Field(..., min_length=1)
    language_id: int = Field(..., ge=1)
    stdin: Optional[str] = None
    expected_output: Optional[str] = None
    command_line_arguments: Optional[str] = Field(None, max_length=512)
    cpu_time_limit: Optional[float] = Field(None, gt=0, le=15)
    cpu_extra_time: Optional[float] = Field(None, ge=0, le=5)
    wall_time_limit: Optional[float] = Field(None, gt=0, le=20)
    memory_limit: Optional[int] = Field(None, gt=0, le=256000)
    stack_limit: Optional[int] = Field(None, ge=0, le=128000)
    max_processes_and_or_threads: Optional[int] = Field(None, ge=1, le=120)
    max_file_size: Optional[int] = Field(None, ge=0, le=4096)
    number_of_runs: Optional[int] = Field(None, ge=1, le=20)
    redirect_stderr_to_stdout: bool = False
    enable_network: bool = False
    base64_encoded: bool = False
    callback_url: Optional[str] = None
    additional_files: Optional[str] = None


class CreateSubmissionResponse(BaseModel):
    token: str


class StatusResponse(BaseModel):
    id: int
    description: str


class SubmissionResponse(BaseModel):
    token: str
    language_id: int
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    time: Optional[float] = None
    memory: Optional[int] = None
    exit_code: Optional[int] = None
    message: Optional[str] = None
    status: StatusResponse
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class LanguageResponse(BaseModel):
    id: int
    name: str
    is_archived: bool
    source_file: str
    compile_cmd: Optional[str] = None
    run_cmd: str
