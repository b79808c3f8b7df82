import base64
import binascii
import io
import logging
import secrets
import threading
import time as pytime
import zipfile
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .models import Language, Status, Submission, utcnow
from .schemas import (CreateSubmissionRequest, CreateSubmissionResponse,
                      LanguageResponse, StatusResponse, SubmissionResponse)
from .services import build_services
from .status import StatusId
from .webhook import is_allowed_webhook_url

logger = logging.getLogger("uvicorn.error")
logger.setLevel(logging.INFO)

rate_limit_lock = threading.Lock()
rate_limit_times = []


class InvalidEncoding(ValueError):
    pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, 'services', None) is None:
        app.state.services = build_services()
    yield


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services(request: Request):
    return request.app.state.services


def check_rate_limit(limit_per_minute: int) -> bool:
    # 1分間のAPIリクエスト回数制限
    now = pytime.time()
    with rate_limit_lock:
        rate_limit_times[:] = [t for t in rate_limit_times if now - t < 60]
        if len(rate_limit_times) >= limit_per_minute:
            return False
        rate_limit_times.append(now)
    return True


def check_request_size(code: str, config: dict) -> bool:
    max_request_body_size = config.get('max_request_body_size', 1048576)
    return len(code.encode('utf-8')) <= max_request_body_size


def check_code_length(code: str, config: dict) -> bool:
    max_code_length = config.get('max_code_length', 65536)
    return len(code) <= max_code_length


def decode_base64(value: Optional[str], field: str) -> Optional[str]:
    if not value:
        return value
    try:
        return base64.b64decode(value, validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError) as e:
        raise InvalidEncoding(field) from e


def decode_additional_files(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    try:
        data = base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise InvalidEncoding('additional_files') from e
    if not zipfile.is_zipfile(io.BytesIO(data)):
        raise InvalidEncoding('additional_files')
    return data


def encode_base64(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return base64.b64encode(value.encode('utf-8')).decode('ascii')


def field_error(field: str, message: str, status_code: int = 422) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={field: [message]})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # フィールドごとのエラーメッセージに整形
    errors = [{str(err['loc'][-1]): [err['msg']]} for err in exc.errors()]
    return JSONResponse(status_code=422, content=errors)


@app.get("/")
def root():
    return {"status": "OK"}


@app.post("/submissions", status_code=201, response_model=CreateSubmissionResponse)
def create_submission(req: CreateSubmissionRequest, request: Request,
                      background_tasks: BackgroundTasks, base64_encoded: bool = False):
    services = get_services(request)
    config = services.config

    if not check_rate_limit(config.get('rate_limit_per_minute', 30)):
        return JSONResponse(status_code=429, content={"error": "Rate limit exceeded"})
    if not check_request_size(req.source_code, config):
        return JSONResponse(status_code=413, content={"error": "Request body too large"})
    if not check_code_length(req.source_code, config):
        return JSONResponse(status_code=413, content={"error": "Code too long"})

    encoded = base64_encoded or req.base64_encoded
    try:
        if encoded:
            source_code = decode_base64(req.source_code, 'source_code')
            stdin = decode_base64(req.stdin, 'stdin')
            expected_output = decode_base64(req.expected_output, 'expected_output')
        else:
            source_code, stdin, expected_output = req.source_code, req.stdin, req.expected_output
        additional_files = decode_additional_files(req.additional_files)
    except InvalidEncoding as e:
        return field_error(str(e), "Invalid Base64 encoding")

    if not source_code or not source_code.strip():
        return field_error('source_code', "Source code is required")
    if req.callback_url and not is_allowed_webhook_url(req.callback_url):
        return field_error('callback_url',
                           "Webhook URL targets a disallowed destination "
                           "(private network, localhost, or internal domain)")

    db = services.session_factory()
    try:
        language = db.get(Language, req.language_id)
        if language is None:
            return field_error('language_id', f"language with id {req.language_id} doesn't exist")
        if language.is_archived:
            return field_error('language_id',
                               f"language with id {req.language_id} is archived and cannot be used anymore")

        now = utcnow()
        submission = Submission(
            token=f"sub_{secrets.token_hex(16)}",
            source_code=source_code,
            language_id=req.language_id,
            stdin=stdin or None,
            expected_output=expected_output or None,
            command_line_arguments=req.command_line_arguments or None,
            callback_url=req.callback_url or None,
            additional_files=additional_files,
            cpu_time_limit=req.cpu_time_limit,
            cpu_extra_time=req.cpu_extra_time,
            wall_time_limit=req.wall_time_limit,
            memory_limit=req.memory_limit,
            stack_limit=req.stack_limit,
            max_processes_and_or_threads=req.max_processes_and_or_threads,
            max_file_size=req.max_file_size,
            number_of_runs=req.number_of_runs,
            redirect_stderr_to_stdout=req.redirect_stderr_to_stdout,
            enable_network=req.enable_network,
            status_id=int(StatusId.IN_QUEUE),
            created_at=now,
            queued_at=now,
        )
        db.add(submission)
        db.commit()
        submission_id, token = submission.id, submission.token
    except SQLAlchemyError as e:
        logger.error(f'db commit error: {e}', exc_info=True)
        db.rollback()
        return JSONResponse(status_code=500,
                            content={"error": "Internal server error during submission processing"})
    finally:
        db.close()

    background_tasks.add_task(services.orchestrator.dispatch, submission_id)
    return CreateSubmissionResponse(token=token)


@app.get("/submissions/{token}", response_model=SubmissionResponse)
def get_submission(token: str, request: Request, base64_encoded: bool = False):
    services = get_services(request)
    with services.session_factory() as db:
        submission = db.query(Submission).filter(Submission.token == token).first()
        if submission is None:
            raise HTTPException(status_code=404, detail="Submission not found")
        status = StatusId(submission.status_id)
        stdout, stderr = submission.stdout, submission.stderr
        if base64_encoded:
            stdout, stderr = encode_base64(stdout), encode_base64(stderr)
        return SubmissionResponse(
            token=submission.token,
            language_id=submission.language_id,
            stdout=stdout,
            stderr=stderr,
            time=submission.time,
            memory=submission.memory,
            exit_code=submission.exit_code,
            message=submission.message,
            status=StatusResponse(id=int(status), description=status.description),
            created_at=submission.created_at,
            started_at=submission.started_at,
            finished_at=submission.finished_at,
        )


def _language_response(language: Language) -> LanguageResponse:
    return LanguageResponse(
        id=language.id,
        name=language.name,
        is_archived=language.is_archived,
        source_file=language.source_file,
        compile_cmd=language.compile_cmd,
        run_cmd=language.run_cmd,
    )


@app.get("/languages", response_model=list[LanguageResponse])
def list_languages(request: Request):
    with get_services(request).session_factory() as db:
        languages = db.query(Language).filter(Language.is_archived.is_(False)).order_by(Language.id).all()
        return [_language_response(language) for language in languages]


@app.get("/languages/all", response_model=list[LanguageResponse])
def list_all_languages(request: Request):
    with get_services(request).session_factory() as db:
        return [_language_response(language) for language in db.query(Language).order_by(Language.id).all()]


@app.get("/languages/{language_id}", response_model=LanguageResponse)
def get_language(language_id: int, request: Request):
    with get_services(request).session_factory() as db:
        language = db.get(Language, language_id)
        if language is None:
            raise HTTPException(status_code=404, detail="Language not found")
        return _language_response(language)


@app.get("/statuses", response_model=list[StatusResponse])
def list_statuses(request: Request):
    with get_services(request).session_factory() as db:
        return [StatusResponse(id=s.id, description=s.name) for s in db.query(Status).order_by(Status.id).all()]
