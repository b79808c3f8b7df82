import io
import tarfile
import threading
import zipfile

from docker.errors import DockerException
from docker.utils.socket import STDERR, STDOUT

from judge_backend.grader import grade
from judge_backend.sandbox import SandboxRunner, make_archive, zip_members
from judge_backend.schemas import ExecutionResult, Limits
from judge_backend.status import StatusId

from conftest import CPP, PYTHON, StubRegistry, frame


def make_runner(client, config, **sandbox):
    config = dict(config)
    config['sandbox'] = dict(config['sandbox'], **sandbox)
    return SandboxRunner(client, StubRegistry({71: PYTHON, 54: CPP}), config)


def archived_files(client) -> dict:
    container_id, path, data = client.api.put_archive.call_args[0]
    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
        return {m.name: tar.extractfile(m).read() for m in tar.getmembers()}


def test_unsupported_language(docker_client, config):
    result = make_runner(docker_client, config).run('x', 12345)
    assert result == ExecutionResult(stdout='', stderr='Language not supported', exit_code=1)
    docker_client.api.create_container.assert_not_called()


def test_successful_run(docker_client, config):
    docker_client.api.exec_start.return_value = iter([(b'hello\n', None), (None, b'warn')])
    result = make_runner(docker_client, config).run('print("hello")', 71)

    assert result.stdout == 'hello\n'
    assert result.stderr == 'warn'
    assert result.exit_code == 0
    assert result.memory == 2000
    assert result.error is None
    assert archived_files(docker_client) == {'main.py': b'print("hello")'}
    docker_client.api.start.assert_called_once_with('container-1')
    docker_client.api.remove_container.assert_called_once_with('container-1', v=True)


def test_container_limits(docker_client, config):
    docker_client.api.exec_start.return_value = iter([])
    limits = Limits(memory_limit=64000, cpu_time_limit=1, cpu_extra_time=0, wall_time_limit=4,
                    max_processes_and_or_threads=10)
    make_runner(docker_client, config).run('pass', 71, limits=limits)

    host_config = docker_client.api.create_host_config.call_args[1]
    assert host_config['network_mode'] == 'none'
    assert host_config['mem_limit'] == 64000 * 1024
    assert host_config['cpu_quota'] == 25000
    assert host_config['pids_limit'] == 10
    container = docker_client.api.create_container.call_args[1]
    assert container['image'] == 'python:3.8.1'
    assert container['name'].startswith('judge-')
    assert len(container['name']) == len('judge-') + 16
    assert container['network_disabled'] is True


def test_network_needs_config_permission(docker_client, config):
    docker_client.api.exec_start.return_value = iter([])
    make_runner(docker_client, config).run('pass', 71, limits=Limits(enable_network=True))
    assert docker_client.api.create_host_config.call_args[1]['network_mode'] == 'none'

    make_runner(docker_client, config, allow_network=True).run('pass', 71, limits=Limits(enable_network=True))
    assert docker_client.api.create_host_config.call_args[1]['network_mode'] == 'bridge'


def test_compile_failure_skips_run(docker_client, config):
    docker_client.api.exec_start.return_value = iter([(None, b"main.cpp:1: error: expected ';'")])
    result = make_runner(docker_client, config).run('int main(){', 54)

    assert result.exit_code == 1
    assert result.stdout == ''
    assert result.stderr == "main.cpp:1: error: expected ';'"
    assert result.memory == 0
    assert docker_client.api.exec_create.call_count == 1
    command = docker_client.api.exec_create.call_args[0][1]
    assert command == ['sh', '-c', CPP.compile_cmd]
    docker_client.api.remove_container.assert_called_once()
    assert grade(result, None) == StatusId.RUNTIME_ERROR


def test_compile_then_run(docker_client, config):
    docker_client.api.exec_start.side_effect = [iter([]), iter([(b'42', None)])]
    result = make_runner(docker_client, config).run('int main(){}', 54)
    assert result.stdout == '42'
    assert docker_client.api.exec_create.call_count == 2
    assert docker_client.api.exec_create.call_args[0][1] == ['sh', '-c', './main']


def test_nonzero_compile_exit_is_failure(docker_client, config):
    docker_client.api.exec_start.return_value = iter([(b'fatal', None)])
    docker_client.api.exec_inspect.return_value = {'ExitCode': 2}
    result = make_runner(docker_client, config).run('bad', 54)
    assert result.stderr == 'fatal'
    assert docker_client.api.exec_create.call_count == 1


def test_create_failure_is_converted(docker_client, config):
    docker_client.api.create_container.side_effect = DockerException('no such image')
    result = make_runner(docker_client, config).run('pass', 71)
    assert result.exit_code == 1
    assert result.stderr == 'Execution error: no such image'
    docker_client.api.remove_container.assert_not_called()


def test_exec_failure_still_removes_container(docker_client, config):
    docker_client.api.exec_create.side_effect = DockerException('exec failed')
    result = make_runner(docker_client, config).run('pass', 71)
    assert result.stderr == 'Execution error: exec failed'
    docker_client.api.remove_container.assert_called_once_with('container-1', v=True)


def test_force_remove_when_graceful_fails(docker_client, config):
    docker_client.api.exec_start.return_value = iter([])
    docker_client.api.stop.side_effect = DockerException('stop failed')
    make_runner(docker_client, config).run('pass', 71)
    docker_client.api.remove_container.assert_called_once_with('container-1', v=True, force=True)


def test_stdin_is_written_once_over_framed_socket(docker_client, config, exec_socket):
    sock, peer = exec_socket(frame(STDOUT, b'3\n') + frame(STDERR, b'debug'))
    docker_client.api.exec_start.return_value = sock
    result = make_runner(docker_client, config).run('print(input())', 71, stdin='3\n')

    assert peer.recv(1024) == b'3\n'
    assert peer.recv(1024) == b''
    assert result.stdout == '3\n'
    assert result.stderr == 'debug'
    assert docker_client.api.exec_create.call_args[1]['stdin'] is True
    docker_client.api.exec_start.assert_called_once_with('exec-1', socket=True, tty=False)


def test_timeout_on_framed_socket(docker_client, config, exec_socket):
    sock, _ = exec_socket(frame(STDOUT, b'partial'), eof=False)
    docker_client.api.exec_start.return_value = sock
    limits = Limits(wall_time_limit=0.05)
    result = make_runner(docker_client, config).run('while True: pass', 71, stdin='x', limits=limits)

    assert result.exit_code == 1
    assert 'Timeout' in result.error
    assert result.stderr.startswith('Execution error: Timeout')
    docker_client.api.kill.assert_called_once_with('container-1')
    docker_client.api.remove_container.assert_called_once()
    assert grade(result, 'anything') == StatusId.TIME_LIMIT_EXCEEDED


def test_large_stdin_to_program_that_never_reads_times_out(docker_client, config, exec_socket):
    sock, _ = exec_socket(eof=False)
    docker_client.api.exec_start.return_value = sock
    runner = make_runner(docker_client, config)
    results = []

    worker = threading.Thread(target=lambda: results.append(
        runner.run('import time; time.sleep(60)', 71, stdin='x' * (8 * 1024 * 1024),
                   limits=Limits(wall_time_limit=0.05))))
    worker.daemon = True
    worker.start()
    worker.join(5)

    assert not worker.is_alive()
    docker_client.api.kill.assert_called_once_with('container-1')
    assert 'Timeout' in results[0].error
    assert grade(results[0], None) == StatusId.TIME_LIMIT_EXCEEDED


def test_exit_code_waits_until_exec_has_finished(docker_client, config):
    docker_client.api.exec_start.return_value = iter([(b'5\n', None)])
    docker_client.api.exec_inspect.side_effect = [
        {'Running': True, 'ExitCode': None},
        {'Running': True, 'ExitCode': None},
        {'Running': False, 'ExitCode': 0},
    ]
    result = make_runner(docker_client, config).run('print(5)', 71)

    assert result.exit_code == 0
    assert docker_client.api.exec_inspect.call_count == 3
    assert grade(result, '5') == StatusId.ACCEPTED


def test_exit_code_polling_is_bounded(docker_client, config):
    docker_client.api.exec_start.return_value = iter([(b'5\n', None)])
    docker_client.api.exec_inspect.return_value = {'Running': True, 'ExitCode': None}
    result = make_runner(docker_client, config, inspect_attempts=3).run('print(5)', 71)

    assert docker_client.api.exec_inspect.call_count == 3
    assert result.exit_code == 1


def test_timeout_on_dual_stream(docker_client, config):
    killed = threading.Event()
    docker_client.api.kill.side_effect = lambda container_id: killed.set()

    def stream():
        yield b'tick', None
        killed.wait(5)

    docker_client.api.exec_start.return_value = stream()
    result = make_runner(docker_client, config).run('loop', 71, limits=Limits(wall_time_limit=0.05))

    assert killed.is_set()
    assert grade(result, None) == StatusId.TIME_LIMIT_EXCEEDED
    docker_client.api.remove_container.assert_called_once()


def test_single_transport_uses_tty(docker_client, config, exec_socket):
    docker_client.api.exec_start.return_value = exec_socket(b'all output')[0]
    result = make_runner(docker_client, config, transport='single').run('pass', 71)
    assert result.stdout == 'all output'
    assert docker_client.api.exec_create.call_args[1]['tty'] is True


def test_command_line_arguments_are_quoted(docker_client, config):
    docker_client.api.exec_start.return_value = iter([])
    make_runner(docker_client, config).run('pass', 71, arguments="'a b' c;rm")
    assert docker_client.api.exec_create.call_args[0][1] == ['sh', '-c', "python3 main.py 'a b' 'c;rm'"]


def test_redirect_stderr_to_stdout(docker_client, config):
    docker_client.api.exec_start.return_value = iter([(b'out ', b'err')])
    result = make_runner(docker_client, config).run('pass', 71, redirect_stderr_to_stdout=True)
    assert result.stdout == 'out err'
    assert result.stderr == ''


def test_additional_files_are_archived(docker_client, config):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w') as zf:
        zf.writestr('data/input.txt', '1 2 3')
        zf.writestr('../escape.txt', 'nope')
    docker_client.api.exec_start.return_value = iter([])
    make_runner(docker_client, config).run('pass', 71, additional_files=buf.getvalue())

    files = archived_files(docker_client)
    assert files == {'data/input.txt': b'1 2 3', 'main.py': b'pass'}


def test_make_archive_roundtrip_names():
    data = make_archive({'main.py': 'print(1)', 'raw.bin': b'\x00\x01'})
    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
        assert sorted(tar.getnames()) == ['main.py', 'raw.bin']


def test_zip_members_skips_directories():
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w') as zf:
        zf.writestr('dir/', '')
        zf.writestr('a/../../b.txt', 'x')
        zf.writestr('ok.txt', 'y')
    assert zip_members(buf.getvalue()) == {'ok.txt': b'y'}
