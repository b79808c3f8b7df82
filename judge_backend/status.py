import enum


class StatusId(enum.IntEnum):
    IN_QUEUE = 1
    PROCESSING = 2
    ACCEPTED = 3
    WRONG_ANSWER = 4
    TIME_LIMIT_EXCEEDED = 5
    RUNTIME_ERROR = 6

    @property
    def description(self) -> str:
        return STATUS_NAMES[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL


STATUS_NAMES = {
    StatusId.IN_QUEUE: 'In Queue',
    StatusId.PROCESSING: 'Processing',
    StatusId.ACCEPTED: 'Accepted',
    StatusId.WRONG_ANSWER: 'Wrong Answer',
    StatusId.TIME_LIMIT_EXCEEDED: 'Time Limit Exceeded',
    StatusId.RUNTIME_ERROR: 'Compile/Runtime Error',
}

TERMINAL = frozenset({
    StatusId.ACCEPTED,
    StatusId.WRONG_ANSWER,
    StatusId.TIME_LIMIT_EXCEEDED,
    StatusId.RUNTIME_ERROR,
})

# 遷移先 -> 許可される遷移元
# 終了状態の再書き込みは同じ値への上書きのみ許可（保存ステップの再実行用）
_SOURCES = {
    StatusId.PROCESSING: frozenset({StatusId.IN_QUEUE, StatusId.PROCESSING}),
}


def allowed_sources(target: StatusId) -> frozenset:
    target = StatusId(target)
    if target in TERMINAL:
        return frozenset({StatusId.PROCESSING, target})
    return _SOURCES.get(target, frozenset())


def can_transition(current: StatusId, target: StatusId) -> bool:
    return StatusId(current) in allowed_sources(target)
