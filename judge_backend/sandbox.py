import io
import os
import secrets
import shlex
import socket
import tarfile
import threading
import time
import zipfile
from typing import Optional

from docker.errors import DockerException
from docker.types import Ulimit
from requests import RequestException

from .config import resolve_path
from .languages import LanguageRegistry
from .log import get_logger
from .schemas import ExecutionResult, Limits
from .streams import Transport, capture_output, select_transport

logger = get_logger("judge.sandbox")

UNSUPPORTED_LANGUAGE = 'Language not supported'


class ExecutionTimeout(Exception):
    pass


def make_archive(files: dict) -> bytes:
    """ファイル名 -> 内容 の辞書からtarアーカイブを作る（put_archive用）"""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w') as tar:
        for name, content in files.items():
            if isinstance(content, str):
                content = content.encode('utf-8')
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            info.mode = 0o644
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def zip_members(data: bytes) -> dict:
    """追加ファイル（zip）を展開する。絶対パスや..を含むエントリは無視"""
    files = {}
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        for member in zf.infolist():
            name = member.filename
            if member.is_dir() or name.startswith('/') or '..' in name.split('/'):
                continue
            files[name] = zf.read(member)
    return files


def _shutdown(sock, how=socket.SHUT_RDWR):
    raw = getattr(sock, '_sock', sock)
    try:
        raw.shutdown(how)
    except OSError as e:
        logger.debug("socket shutdown failed: %s", e)


def _close(sock):
    try:
        sock.close()
    except OSError as e:
        logger.debug("socket close failed: %s", e)


class SandboxRunner:
    """
    提出コードを使い捨てコンテナで実行する。
    例外は外に出さず、必ずExecutionResultを返す。コンテナはどの経路でも削除する
    """

    def __init__(self, client, registry: LanguageRegistry, config: Optional[dict] = None):
        sandbox = (config or {}).get('sandbox', {})
        self.client = client
        self.registry = registry
        self.container_prefix = sandbox.get('container_prefix', 'judge-')
        self.workdir = sandbox.get('workdir', '/box')
        self.keepalive = sandbox.get('keepalive', ['tail', '-f', '/dev/null'])
        self.timeout_buffer = float(sandbox.get('timeout_buffer', 5))
        self.transport = Transport(sandbox.get('transport', 'dual'))
        self.allow_network = bool(sandbox.get('allow_network', False))
        self.cpu_period = int(sandbox.get('cpu_period', 100000))
        self.max_cpus = float(sandbox.get('max_cpus', 1.0))
        self.stdin_grace = float(sandbox.get('stdin_grace', 1.0))
        self.inspect_attempts = max(1, int(sandbox.get('inspect_attempts', 20)))
        self.inspect_interval = float(sandbox.get('inspect_interval', 0.05))
        self.security_opt = self._security_opt(sandbox.get('seccomp_profile'))

    @staticmethod
    def _security_opt(profile):
        security_opt = ['no-new-privileges']
        if profile:
            path = resolve_path(profile)
            if os.path.exists(path):
                with open(path, 'r') as f:
                    security_opt.append(f"seccomp={f.read()}")
        return security_opt

    def run(self, source_code: str, language_id: int, stdin: str = '',
            limits: Optional[Limits] = None, arguments: Optional[str] = None,
            additional_files: Optional[bytes] = None,
            redirect_stderr_to_stdout: bool = False) -> ExecutionResult:
        language = self.registry.lookup(language_id)
        if language is None:
            return ExecutionResult(stdout='', stderr=UNSUPPORTED_LANGUAGE, exit_code=1)

        limits = limits or Limits()
        name = f"{self.container_prefix}{secrets.token_hex(8)}"
        timeout = limits.wall_time_limit + self.timeout_buffer

        result = ExecutionResult()
        container_id = None
        start = time.monotonic()
        try:
            container_id = self._create_container(name, language.image, limits)
            self.client.api.start(container_id)

            files = zip_members(additional_files) if additional_files else {}
            files[language.file_name] = source_code
            self.client.api.put_archive(container_id, self.workdir, make_archive(files))

            if language.compile_first:
                compiled, compile_code = self._exec(container_id, language.compile_cmd, timeout)
                if compiled.stderr or compile_code:
                    logger.info("compile failed [container=%s]", name)
                    return ExecutionResult(
                        stdout='',
                        stderr=compiled.stderr or compiled.stdout,
                        exit_code=1,
                        time=time.monotonic() - start,
                        memory=0,
                    )

            command = language.run_cmd
            if arguments:
                command += ' ' + ' '.join(shlex.quote(arg) for arg in shlex.split(arguments))

            run_start = time.monotonic()
            output, exit_code = self._exec(container_id, command, timeout, stdin=stdin)
            elapsed = time.monotonic() - run_start

            result = ExecutionResult(
                stdout=output.stdout,
                stderr=output.stderr,
                exit_code=exit_code,
                time=elapsed,
                memory=self._peak_memory(container_id),
            )
        except ExecutionTimeout as e:
            logger.info("execution timed out [container=%s]: %s", name, e)
            result.stderr = f"Execution error: {e}"
            result.error = str(e)
            result.time = time.monotonic() - start
        except Exception as e:
            logger.error("execution error [container=%s]: %s", name, e, exc_info=True)
            result.stderr = f"Execution error: {e}"
            result.time = time.monotonic() - start
        finally:
            if container_id:
                self._remove(container_id)

        if redirect_stderr_to_stdout and result.stderr:
            result.stdout += result.stderr
            result.stderr = ''
        return result

    def _cpu_quota(self, limits: Limits) -> int:
        # CPU時間を壁時計時間内に使い切れる割合をクォータにする
        cpus = (limits.cpu_time_limit + limits.cpu_extra_time) / max(limits.wall_time_limit, 0.001)
        cpus = min(max(cpus, 0.1), self.max_cpus)
        return int(cpus * self.cpu_period)

    def _create_container(self, name: str, image: str, limits: Limits) -> str:
        network = limits.enable_network and self.allow_network
        stack = limits.stack_limit * 1024
        fsize = limits.max_file_size * 1024
        host_config = self.client.api.create_host_config(
            network_mode='bridge' if network else 'none',
            mem_limit=limits.memory_limit * 1024,
            memswap_limit=limits.memory_limit * 1024,
            cpu_period=self.cpu_period,
            cpu_quota=self._cpu_quota(limits),
            pids_limit=limits.max_processes_and_or_threads,
            ulimits=[
                Ulimit(name='stack', soft=stack, hard=stack),
                Ulimit(name='fsize', soft=fsize, hard=fsize),
            ],
            security_opt=self.security_opt,
        )
        container = self.client.api.create_container(
            image=image,
            name=name,
            command=self.keepalive,
            working_dir=self.workdir,
            host_config=host_config,
            network_disabled=not network,
            detach=True,
        )
        logger.debug("container created [name=%s, image=%s]", name, image)
        return container.get('Id')

    def _exec(self, container_id: str, command: str, timeout: float, stdin: str = ''):
        """
        コマンドを実行して出力を集める。timeout秒で強制終了しExecutionTimeoutを送出
        """
        interactive = bool(stdin)
        tty = self.transport is Transport.SINGLE
        transport = select_transport(tty, interactive, self.transport)
        exec_id = self.client.api.exec_create(
            container_id,
            ['sh', '-c', command],
            stdout=True,
            stderr=True,
            stdin=interactive,
            tty=tty,
            workdir=self.workdir,
        )['Id']

        fired = threading.Event()
        attached = {}

        def expire():
            fired.set()
            self._kill(container_id)
            if 'sock' in attached:
                _shutdown(attached['sock'])

        # タイマーはexec_startとstdin書き込みより前に張る
        timer = threading.Timer(timeout, expire)
        timer.daemon = True
        timer.start()
        message = f"Timeout: wall time limit exceeded ({timeout:g}s)"
        sock = None
        writer = None
        try:
            if transport is Transport.DUAL:
                source = self.client.api.exec_start(exec_id, stream=True, demux=True)
            else:
                sock = self.client.api.exec_start(exec_id, socket=True, tty=tty)
                attached['sock'] = sock
                if fired.is_set():
                    _shutdown(sock)
                source = sock
                if interactive:
                    # 出力の読み取りと並行して書き込む
                    writer = threading.Thread(target=self._write_stdin, args=(sock, stdin), daemon=True)
                    writer.start()
            output = capture_output(transport, source)
        except Exception as e:
            if fired.is_set():
                raise ExecutionTimeout(message) from e
            raise
        finally:
            timer.cancel()
            if writer is not None:
                writer.join(self.stdin_grace)
                if writer.is_alive():
                    _shutdown(sock)
                    writer.join()
            if sock is not None:
                _close(sock)
        if fired.is_set():
            raise ExecutionTimeout(message)

        return output, self._exit_code(exec_id)

    def _exit_code(self, exec_id: str):
        """
        execの終了コード。ストリーム終了直後はRunningのままのことがあるので
        inspect_attempts回まで待つ
        """
        info = {}
        for _ in range(self.inspect_attempts):
            info = self.client.api.exec_inspect(exec_id)
            if not info.get('Running'):
                break
            time.sleep(self.inspect_interval)
        else:
            logger.warning("exec still running after stream closed [exec=%s]", exec_id)
        exit_code = info.get('ExitCode')
        return 1 if exit_code is None else exit_code

    @staticmethod
    def _write_stdin(sock, data: str):
        # 1回だけ書き込んで書き込み側を閉じる（EOFを渡す）
        raw = getattr(sock, '_sock', sock)
        try:
            raw.sendall(data.encode('utf-8'))
        except OSError as e:
            # プログラムが読み切らずに終了した、またはタイムアウトで切断された
            logger.debug("stdin write interrupted: %s", e)
            return
        _shutdown(sock, socket.SHUT_WR)

    def _peak_memory(self, container_id: str) -> int:
        stats = self.client.api.stats(container_id, stream=False)
        memory = stats.get('memory_stats') or {}
        usage = memory.get('max_usage') or memory.get('usage') or 0
        return int(usage // 1024)

    def _kill(self, container_id: str):
        try:
            self.client.api.kill(container_id)
        except (DockerException, RequestException) as e:
            logger.warning("kill failed [container=%s]: %s", container_id, e)

    def _remove(self, container_id: str):
        try:
            self.client.api.stop(container_id, timeout=1)
            self.client.api.remove_container(container_id, v=True)
            return
        except (DockerException, RequestException) as e:
            logger.warning("graceful remove failed [container=%s]: %s", container_id, e)
        try:
            self.client.api.remove_container(container_id, v=True, force=True)
        except (DockerException, RequestException) as e:
            logger.error("force remove failed [container=%s]: %s", container_id, e)
