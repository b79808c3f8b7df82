import itertools
import socket
import struct
from unittest.mock import MagicMock

import pytest

from judge_backend.db import init_db, make_engine, make_session_factory
from judge_backend.languages import LanguageConfig
from judge_backend.models import Submission, utcnow
from judge_backend.status import StatusId

_tokens = itertools.count(1)

CATALOG = [
    {'id': 54, 'name': 'C++ (GCC 9.2.0)', 'image': 'gcc:9.2.0', 'source_file': 'main.cpp',
     'compile_cmd': 'g++ -O2 -std=c++17 -o main main.cpp', 'run_cmd': './main'},
    {'id': 71, 'name': 'Python (3.8.1)', 'image': 'python:3.8.1', 'source_file': 'main.py',
     'compile_cmd': None, 'run_cmd': 'python3 main.py'},
    {'id': 1, 'name': 'Bash (4.4)', 'image': 'bash:4.4', 'archived': True, 'source_file': 'script.sh',
     'compile_cmd': None, 'run_cmd': 'bash script.sh'},
    {'id': 99, 'name': 'Brainfuck', 'source_file': 'main.bf', 'compile_cmd': None, 'run_cmd': 'bf main.bf'},
]

PYTHON = LanguageConfig(image='python:3.8.1', run_cmd='python3 main.py', file_name='main.py')
CPP = LanguageConfig(image='gcc:9.2.0', run_cmd='./main', file_name='main.cpp',
                     compile_cmd='g++ -O2 -std=c++17 -o main main.cpp')


def frame(stream_id: int, data: bytes) -> bytes:
    return struct.pack('>BxxxL', stream_id, len(data)) + data


class StubRegistry:
    def __init__(self, languages=None):
        self.languages = languages or {}

    def lookup(self, language_id):
        return self.languages.get(language_id)


@pytest.fixture
def exec_socket():
    """
    exec_start(socket=True) の代わり。socketpairの片側を返し、もう片側からdataを送る。
    eof=Falseなら相手側は閉じず、shutdownされるまで読み取りが止まる
    """
    opened = []

    def _make(data: bytes = b'', eof: bool = True):
        sock, peer = socket.socketpair()
        opened.extend([sock, peer])
        if data:
            peer.sendall(data)
        if eof:
            peer.shutdown(socket.SHUT_WR)
        return sock, peer

    yield _make
    for s in opened:
        s.close()


@pytest.fixture
def docker_client():
    client = MagicMock()
    client.api.create_container.return_value = {'Id': 'container-1'}
    client.api.exec_create.return_value = {'Id': 'exec-1'}
    client.api.exec_inspect.return_value = {'ExitCode': 0}
    client.api.stats.return_value = {'memory_stats': {'max_usage': 2048000, 'usage': 1024000}}
    return client


@pytest.fixture
def config():
    return {
        'rate_limit_per_minute': 1000,
        'limits': {
            'cpu_time_limit': 2,
            'cpu_extra_time': 0.5,
            'wall_time_limit': 5,
            'memory_limit': 128000,
            'stack_limit': 64000,
            'max_processes_and_or_threads': 60,
            'max_file_size': 1024,
        },
        'sandbox': {'timeout_buffer': 0, 'seccomp_profile': None, 'inspect_interval': 0},
        'workflow': {'max_attempts': 2, 'backoff': 0},
    }


@pytest.fixture
def session_factory():
    engine = make_engine('sqlite://')
    factory = make_session_factory(engine)
    init_db(engine, factory, CATALOG)
    yield factory
    engine.dispose()


@pytest.fixture
def make_submission(session_factory):
    def _make(**fields):
        values = {
            'token': f"sub_{next(_tokens):032x}",
            'source_code': 'print(input())',
            'language_id': 71,
            'status_id': int(StatusId.IN_QUEUE),
            'queued_at': utcnow(),
        }
        values.update(fields)
        with session_factory() as db:
            submission = Submission(**values)
            db.add(submission)
            db.commit()
            return submission.id
    return _make
