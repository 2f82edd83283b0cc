import logging
import subprocess
import threading
from typing import List, Optional

logger = logging.getLogger("routecast-worker")

BYTES_PER_PIXEL = 4  # rgba
STDERR_TAIL = 2000


class EncoderError(RuntimeError):
    pass


def even_dimension(value: int) -> int:
    """libx264 with yuv420p needs even frame sides; round odd ones up."""
    return value + (value % 2)


def build_encoder_command(
    encoder_argv: List[str], output_path: str, width: int, height: int, fps: int
) -> List[str]:
    return encoder_argv + [
        "-f",
        "rawvideo",
        "-pix_fmt",
        "rgba",
        "-s",
        f"{width}x{height}",
        "-r",
        str(fps),
        "-i",
        "-",
        "-y",
        "-an",
        "-c:v",
        "libx264",
        "-pix_fmt",
        "yuv420p",
        output_path,
    ]


class EncoderBridge:
    """Owns one encoder process fed raw RGBA frames over stdin.

    `write_frame` blocks while the encoder is behind; that is the only
    back-pressure between capture and encoding.
    """

    def __init__(
        self,
        encoder_argv: List[str],
        output_path: str,
        width: int,
        height: int,
        fps: int,
        timeout: float = 120.0,
    ):
        self.cmd = build_encoder_command(encoder_argv, output_path, width, height, fps)
        self.output_path = output_path
        self.frame_size = width * height * BYTES_PER_PIXEL
        self.timeout = timeout
        self.frames_written = 0
        self._proc: Optional[subprocess.Popen] = None
        self._stderr = bytearray()
        self._stderr_reader: Optional[threading.Thread] = None

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> None:
        logger.info("Starting encoder: %s", " ".join(self.cmd))
        try:
            self._proc = subprocess.Popen(
                self.cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise EncoderError(f"unable to start encoder {self.cmd[0]!r}: {e}") from e
        # stderr must be drained or a chatty encoder stalls on a full pipe
        self._stderr_reader = threading.Thread(
            target=self._collect_stderr, name="encoder-stderr", daemon=True
        )
        self._stderr_reader.start()

    def _collect_stderr(self) -> None:
        try:
            for chunk in iter(lambda: self._proc.stderr.read(4096), b""):
                self._stderr.extend(chunk)
                if len(self._stderr) > STDERR_TAIL * 4:
                    del self._stderr[: len(self._stderr) - STDERR_TAIL]
        except (OSError, ValueError):
            # pipe closed under us by abort
            return

    def stderr_tail(self) -> str:
        return bytes(self._stderr[-STDERR_TAIL:]).decode("utf-8", errors="replace")

    def write_frame(self, frame: bytes) -> None:
        if self._proc is None or self._proc.stdin is None:
            raise EncoderError("encoder not started")
        if len(frame) != self.frame_size:
            raise EncoderError(f"frame is {len(frame)} bytes, expected {self.frame_size}")
        try:
            self._proc.stdin.write(frame)
            self._proc.stdin.flush()
        except (BrokenPipeError, ValueError) as e:
            raise EncoderError(f"encoder stopped accepting frames: {e}") from e
        self.frames_written += 1

    def finish(self) -> str:
        """Close stdin, wait for the encoder and return the output path on exit 0."""
        if self._proc is None:
            raise EncoderError("encoder not started")
        try:
            self._proc.stdin.close()
        except OSError:
            pass
        try:
            code = self._proc.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise EncoderError(f"encoder did not exit within {self.timeout}s") from e
        self._close_stderr()
        if code != 0:
            logger.error("Encoder exited with code %s: %s", code, self.stderr_tail())
            raise EncoderError(f"encoder exited with code {code}")
        logger.info("Encoder finished %s (%d frames)", self.output_path, self.frames_written)
        return self.output_path

    def _close_stderr(self) -> None:
        if self._stderr_reader is not None:
            self._stderr_reader.join(timeout=5)
        stderr = self._proc.stderr if self._proc is not None else None
        if stderr is not None and not stderr.closed:
            try:
                stderr.close()
            except OSError:
                pass

    def abort(self) -> None:
        """Kill the encoder if it is still running. Never raises."""
        proc = self._proc
        if proc is None:
            return
        if proc.stdin is not None and not proc.stdin.closed:
            try:
                proc.stdin.close()
            except OSError:
                pass
        if proc.poll() is None:
            try:
                proc.kill()
                proc.wait(timeout=5)
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.warning("Could not kill encoder pid %s: %s", proc.pid, e)
        self._close_stderr()
