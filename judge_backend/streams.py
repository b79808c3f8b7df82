"""
コンテナexecの出力をstdout/stderrに振り分ける。

exec呼び出しごとに転送方式を1つ選ぶ:

- DUAL: docker-pyのデマルチプレクサが (stdout, stderr) の組を返す。
  両ストリームの終了をカウンタで数えて完了とする
- FRAMED: 生のattachソケット。8バイトのヘッダ（ストリーム種別 + サイズ）で
  多重化されたフレームを docker.utils.socket.frames_iter で読む。stdinを書き込む場合はこちら
- SINGLE: tty付きのソケット。フレームなし、全てstdout扱い（stderrは失われる）
"""
import enum

from docker.utils.socket import STDERR, STDOUT, frames_iter


class Transport(enum.Enum):
    DUAL = 'dual'
    FRAMED = 'framed'
    SINGLE = 'single'


def select_transport(tty: bool, interactive: bool, preferred=Transport.DUAL) -> Transport:
    if tty:
        return Transport.SINGLE
    if interactive:
        return Transport.FRAMED
    return Transport(preferred)


class OutputCapture:
    """stdout/stderrのバッファと、両ストリームの終了カウンタ"""

    STREAMS = (STDOUT, STDERR)

    def __init__(self):
        self.buffers = {STDOUT: bytearray(), STDERR: bytearray()}
        self._ended = set()

    def write(self, stream_id: int, data: bytes):
        if not data:
            return
        if stream_id not in self.buffers:
            # stdinのエコーなど未知の種別はstdoutへ
            stream_id = STDOUT
        self.buffers[stream_id].extend(data)

    def end(self, stream_id: int):
        self._ended.add(stream_id)

    def end_all(self):
        for stream_id in self.STREAMS:
            self.end(stream_id)

    @property
    def complete(self) -> bool:
        return len(self._ended) >= len(self.STREAMS)

    @property
    def stdout(self) -> str:
        return self.buffers[STDOUT].decode('utf-8', errors='replace')

    @property
    def stderr(self) -> str:
        return self.buffers[STDERR].decode('utf-8', errors='replace')


def _capture_dual(pairs, capture: OutputCapture):
    for out, err in pairs:
        capture.write(STDOUT, out)
        capture.write(STDERR, err)
    capture.end_all()


def _capture_socket(sock, capture: OutputCapture, tty: bool):
    # ヘッダの解釈と部分読みはdocker-pyに任せる
    for stream_id, payload in frames_iter(sock, tty):
        capture.write(stream_id, payload)
    capture.end_all()


def _capture_framed(sock, capture: OutputCapture):
    _capture_socket(sock, capture, tty=False)


def _capture_single(sock, capture: OutputCapture):
    _capture_socket(sock, capture, tty=True)


_HANDLERS = {
    Transport.DUAL: _capture_dual,
    Transport.FRAMED: _capture_framed,
    Transport.SINGLE: _capture_single,
}


def capture_output(transport: Transport, source) -> OutputCapture:
    """
    sourceはDUALなら (stdout, stderr) の反復子、それ以外はソケット。
    ストリームが閉じるまでブロックする
    """
    capture = OutputCapture()
    _HANDLERS[transport](source, capture)
    return capture
