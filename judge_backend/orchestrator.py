import base64
import json
import time
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from .grader import grade
from .log import get_logger
from .models import Submission, WorkflowStep, utcnow
from .schemas import LIMIT_FIELDS, ExecutionResult, resolve_limits
from .status import StatusId, allowed_sources
from .webhook import build_payload

logger = get_logger("judge.orchestrator")

SNAPSHOT_FIELDS = (
    'id',
    'token',
    'source_code',
    'language_id',
    'stdin',
    'expected_output',
    'callback_url',
    'command_line_arguments',
    'redirect_stderr_to_stdout',
    'enable_network',
) + LIMIT_FIELDS


class SubmissionNotFound(Exception):
    pass


class StepInProgress(Exception):
    """別のワーカーが同じステップを実行中"""


class Workflow:
    """
    1提出分のステップ完了記録。
    記録済みのステップは再実行せず、保存した出力を返す。
    実行前にステップを担当として記録し、claim_timeout秒以内の他ワーカーの担当は奪わない
    """

    def __init__(self, session_factory, submission_id: int, claim_timeout: float = 300):
        self.session_factory = session_factory
        self.submission_id = submission_id
        self.claim_timeout = claim_timeout

    def _lookup(self, name):
        with self.session_factory() as db:
            record = db.get(WorkflowStep, (self.submission_id, name))
            if record is None or record.completed_at is None:
                return False, None
            return True, json.loads(record.output) if record.output else None

    def _claim(self, name: str):
        now = utcnow()
        with self.session_factory() as db:
            record = db.get(WorkflowStep, (self.submission_id, name))
            if record is None:
                db.add(WorkflowStep(submission_id=self.submission_id, step=name, claimed_at=now))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    raise StepInProgress(f"step {name} claimed concurrently [id={self.submission_id}]")
                return
            if record.completed_at is not None:
                return
            # 期限切れの担当（止まったワーカー）だけ引き継ぐ
            taken = db.query(WorkflowStep).filter(
                WorkflowStep.submission_id == self.submission_id,
                WorkflowStep.step == name,
                WorkflowStep.completed_at.is_(None),
                WorkflowStep.claimed_at < now - timedelta(seconds=self.claim_timeout),
            ).update({'claimed_at': now}, synchronize_session=False)
            db.commit()
        if not taken:
            raise StepInProgress(f"step {name} is running elsewhere [id={self.submission_id}]")
        logger.warning("stale step taken over [id=%s, step=%s]", self.submission_id, name)

    def _release(self, name: str):
        with self.session_factory() as db:
            db.query(WorkflowStep).filter(
                WorkflowStep.submission_id == self.submission_id,
                WorkflowStep.step == name,
                WorkflowStep.completed_at.is_(None),
            ).delete(synchronize_session=False)
            db.commit()

    def step(self, name: str, fn, claim: bool = True):
        """
        claim=Falseは読み取りだけのステップ用。二重に実行されても結果は同じ
        """
        done, output = self._lookup(name)
        if done:
            logger.debug("step already completed [id=%s, step=%s]", self.submission_id, name)
            return output
        if claim:
            self._claim(name)
            done, output = self._lookup(name)
            if done:
                return output
        # fnの書き込みとステップ完了は同じトランザクションでコミット
        try:
            with self.session_factory() as db:
                output = fn(db)
                db.merge(WorkflowStep(submission_id=self.submission_id, step=name,
                                      output=json.dumps(output), completed_at=utcnow()))
                db.commit()
        except IntegrityError:
            done, recorded = self._lookup(name)
            if done:
                return recorded
            if claim:
                self._release(name)
            raise
        except Exception:
            # 失敗したステップは担当を外し、再試行で実行し直せるようにする
            if claim:
                self._release(name)
            raise
        return output

    def mark(self, name: str) -> bool:
        """ステップを先に完了として記録する。既に記録済みならFalse"""
        with self.session_factory() as db:
            if db.get(WorkflowStep, (self.submission_id, name)) is not None:
                return False
            db.add(WorkflowStep(submission_id=self.submission_id, step=name, completed_at=utcnow()))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True


class Orchestrator:
    """提出1件を 取得 → 実行中 → サンドボックス実行 → 判定 → 保存 → 通知 の順に処理する"""

    def __init__(self, session_factory, runner, notifier, default_limits=None,
                 max_attempts: int = 3, backoff: float = 2, sleep=time.sleep,
                 claim_timeout: float = 300):
        self.session_factory = session_factory
        self.runner = runner
        self.notifier = notifier
        self.default_limits = default_limits or {}
        self.max_attempts = max(1, int(max_attempts))
        self.backoff = backoff
        self.sleep = sleep
        self.claim_timeout = claim_timeout

    def process(self, submission_id: int) -> StatusId:
        workflow = Workflow(self.session_factory, submission_id, self.claim_timeout)

        submission = workflow.step('fetch-submission', lambda db: self._fetch(db, submission_id), claim=False)
        limits = resolve_limits(submission, self.default_limits)

        marked = workflow.step('update-status-processing', lambda db: self._mark_processing(db, submission_id))
        current = StatusId(marked['status_id'])
        if current.is_terminal:
            logger.warning("submission already finished [id=%s, status=%s]", submission_id, current.description)
            return current

        result = ExecutionResult(**workflow.step(
            'execute-in-sandbox',
            lambda db: self._execute(submission, limits).model_dump(),
        ))
        status_id = grade(result, submission.get('expected_output'))

        workflow.step('save-results', lambda db: self._save(db, submission_id, result, status_id))
        logger.info("submission finished [id=%s, status=%s]", submission_id, status_id.description)

        callback_url = submission.get('callback_url')
        if callback_url and workflow.mark('send-webhook'):
            self.notifier.notify(callback_url, build_payload(submission['token'], result, status_id))
        return status_id

    def dispatch(self, submission_id: int):
        """processを失敗時に指数バックオフで再試行する。全試行失敗ならNone"""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.process(submission_id)
            except StepInProgress as e:
                logger.info("submission is being processed by another worker [id=%s]: %s", submission_id, e)
                return None
            except Exception as e:
                logger.warning("workflow attempt %s/%s failed [id=%s]: %s",
                               attempt, self.max_attempts, submission_id, e)
                if attempt < self.max_attempts:
                    self.sleep(self.backoff ** (attempt - 1))
        logger.error("workflow aborted [id=%s]", submission_id)
        return None

    @staticmethod
    def _fetch(db, submission_id: int) -> dict:
        submission = db.get(Submission, submission_id)
        if submission is None:
            raise SubmissionNotFound(f"submission {submission_id} not found")
        snapshot = {field: getattr(submission, field) for field in SNAPSHOT_FIELDS}
        if submission.additional_files:
            snapshot['additional_files'] = base64.b64encode(submission.additional_files).decode('ascii')
        return snapshot

    @staticmethod
    def _mark_processing(db, submission_id: int) -> dict:
        sources = [int(s) for s in allowed_sources(StatusId.PROCESSING)]
        updated = db.query(Submission).filter(
            Submission.id == submission_id,
            Submission.status_id.in_(sources),
        ).update({'status_id': int(StatusId.PROCESSING), 'started_at': utcnow()},
                 synchronize_session=False)
        if updated:
            return {'status_id': int(StatusId.PROCESSING)}
        current = db.get(Submission, submission_id)
        return {'status_id': current.status_id}

    def _execute(self, submission: dict, limits) -> ExecutionResult:
        additional_files = submission.get('additional_files')
        try:
            return self.runner.run(
                submission['source_code'] or '',
                submission['language_id'],
                submission.get('stdin') or '',
                limits,
                arguments=submission.get('command_line_arguments'),
                additional_files=base64.b64decode(additional_files) if additional_files else None,
                redirect_stderr_to_stdout=bool(submission.get('redirect_stderr_to_stdout')),
            )
        except Exception as e:
            logger.error("sandbox raised [id=%s]: %s", submission['id'], e, exc_info=True)
            return ExecutionResult(stderr=f"Execution error: {e}", exit_code=1, error=str(e))

    @staticmethod
    def _save(db, submission_id: int, result: ExecutionResult, status_id: StatusId) -> dict:
        sources = [int(s) for s in allowed_sources(status_id)]
        updated = db.query(Submission).filter(
            Submission.id == submission_id,
            Submission.status_id.in_(sources),
        ).update({
            'stdout': result.stdout,
            'stderr': result.stderr,
            'time': result.time,
            'memory': result.memory,
            'exit_code': result.exit_code,
            'message': result.error,
            'status_id': int(status_id),
            'finished_at': utcnow(),
        }, synchronize_session=False)
        if not updated:
            logger.warning("result not saved, status moved on [id=%s]", submission_id)
        return {'status_id': int(status_id)}
