#!/usr/bin/env python3
import sys

from sqlalchemy.exc import SQLAlchemyError

from judge_backend.models import Submission
from judge_backend.services import build_services
from judge_backend.status import StatusId

USAGE = "Usage: python -m judge_runner.run <submission_id> | --pending"


def pending_submission_ids(session_factory) -> list:
    """終了状態に達していない提出（キュー待ち・実行中のまま止まったもの）"""
    with session_factory() as db:
        rows = db.query(Submission.id).filter(
            Submission.status_id.in_([int(StatusId.IN_QUEUE), int(StatusId.PROCESSING)])
        ).order_by(Submission.id).all()
    return [row.id for row in rows]


def main(argv=None, services=None) -> int:
    """スクリプトのメイン実行ロジック"""
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        print(USAGE, file=sys.stderr)
        return 1

    if argv[0] == '--pending':
        submission_ids = None
    else:
        try:
            submission_ids = [int(argv[0])]
        except ValueError:
            print("Error: Invalid arguments.", file=sys.stderr)
            return 1

    try:
        services = services or build_services()
        if submission_ids is None:
            submission_ids = pending_submission_ids(services.session_factory)
            print(f"resuming {len(submission_ids)} pending submission(s)", file=sys.stderr)
    except SQLAlchemyError as e:
        print(f"Error: Failed to connect to database: {e}", file=sys.stderr)
        return 1

    failed = 0
    for submission_id in submission_ids:
        status = services.orchestrator.dispatch(submission_id)
        if status is None:
            print(f"Error: submission {submission_id} could not be processed.", file=sys.stderr)
            failed += 1
        else:
            print(f"submission {submission_id}: {status.description}", file=sys.stderr)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
