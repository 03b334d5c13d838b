import logging
import threading
from typing import BinaryIO, Callable, TextIO

logger = logging.getLogger("launcher.client")


class ConsoleRedirector(threading.Thread):
    """
    Copies the output of a child process line by line to the given console
    stream and hands every line to 'on_line' (without line terminator).
    Ends when the stream is closed.
    """

    def __init__(self, stream: BinaryIO, output: TextIO, on_line: Callable[[str], None], name: str = "console"):
        super().__init__(name=name, daemon=True)
        self.stream = stream
        self.output = output
        self.on_line = on_line

    def run(self):
        with self.stream:
            for raw in iter(self.stream.readline, b""):
                line = raw.decode("utf-8", errors="replace")

                self.output.write(line)
                self.output.flush()

                try:
                    self.on_line(line.rstrip("\r\n"))
                except Exception:
                    logger.exception("Console line handler failed.")
