from typing import Optional

from .schemas import ExecutionResult
from .status import StatusId


def normalize_output(text: Optional[str]) -> str:
    return (text or '').replace('\r\n', '\n').strip()


def is_timeout(result: ExecutionResult) -> bool:
    return any('timeout' in (text or '').lower() for text in (result.stderr, result.error))


def grade(result: ExecutionResult, expected_output: Optional[str]) -> StatusId:
    """
    実行結果から判定を決める。
    異常終了は出力比較より優先（落ちたプログラムのstdoutは判定に使わない）
    expected_outputがなければ正常終了は常にAccepted
    """
    if result.exit_code != 0:
        if is_timeout(result):
            return StatusId.TIME_LIMIT_EXCEEDED
        return StatusId.RUNTIME_ERROR
    if expected_output is not None and normalize_output(result.stdout) != normalize_output(expected_output):
        return StatusId.WRONG_ANSWER
    return StatusId.ACCEPTED
