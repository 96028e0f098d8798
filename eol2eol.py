#!/usr/bin/env python3
"""
eol2eol

Concatenate text files, or standard input, to standard output while
converting every line ending to a single convention. Handles \\r\\n, \\n
and \\r, including mixtures of them within the same file.
"""

import argparse
import enum
import logging
import math
import os
import sys
import traceback
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Optional, Sequence, Tuple

from tqdm import tqdm

# Define version
__version__ = "1.0.0"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
logger = logging.getLogger("eol2eol")

STDIN_NAME = "-"
# File names cannot contain NUL, so this prefix never collides with a real name
FILE_MARK = "\0"
EXIT_USAGE = 255
# Keeps the skipped-file count from wrapping to 0 or matching EXIT_USAGE
MAX_EXIT_STATUS = 254

MEM_OVERHEAD = 1.01
CHUNK_SIZE = 64 * 1024

CR = 0x0D
LF = 0x0A


class Convention(enum.Enum):
    """Output end-of-line convention."""

    MSDOS = b"\r\n"
    UNIX = b"\n"
    MAC = b"\r"

    @property
    def terminator(self) -> bytes:
        return self.value


class LineBuffer:
    """
    Growable byte buffer reused for every line of every source.

    Capacity is over-allocated by MEM_OVERHEAD when it has to grow and is
    never reduced. Once written, capacity is always at least length + 1.
    """

    def __init__(self, capacity: int = 0) -> None:
        self._data = bytearray(capacity)
        self.length = 0

    @property
    def capacity(self) -> int:
        return len(self._data)

    def reserve(self, required: int) -> None:
        """Make room for at least `required` bytes, keeping the content."""
        if required > len(self._data):
            new_capacity = math.ceil(MEM_OVERHEAD * required)
            self._data.extend(bytes(new_capacity - len(self._data)))

    def append(self, byte: int) -> None:
        # one for the byte, one for the terminator
        self.reserve(self.length + 2)
        self._data[self.length] = byte
        self.length += 1

    def clear(self) -> None:
        self.length = 0

    def last(self) -> Optional[int]:
        if not self.length:
            return None
        return self._data[self.length - 1]

    def strip_last(self) -> None:
        if self.length:
            self.length -= 1

    def terminate(self) -> None:
        """Write a NUL sentinel just past the logical end of the line."""
        self.reserve(self.length + 1)
        self._data[self.length] = 0

    def value(self) -> bytes:
        return bytes(self._data[: self.length])


class PushbackReader:
    """
    Byte-at-a-time reader over a binary stream with a one-byte pushback slot.

    Pushback never seeks, so pipes and terminals behave exactly like files.
    """

    def __init__(self, stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> None:
        self.stream = stream
        self.chunk_size = chunk_size
        self._chunk = b""
        self._pos = 0
        self._pushback: Optional[int] = None

    def _fill(self) -> bool:
        # read1 returns what is available instead of waiting for a full chunk
        read = getattr(self.stream, "read1", None) or self.stream.read
        self._chunk = read(self.chunk_size) or b""
        self._pos = 0
        return bool(self._chunk)

    def read_byte(self) -> Optional[int]:
        """Return the next byte, or None at end of stream."""
        if self._pushback is not None:
            byte, self._pushback = self._pushback, None
            return byte
        if self._pos >= len(self._chunk) and not self._fill():
            return None
        byte = self._chunk[self._pos]
        self._pos += 1
        return byte

    def unread(self, byte: int) -> None:
        """Push a byte back so the next read_byte returns it."""
        if self._pushback is not None:
            raise ValueError("pushback slot is already occupied")
        self._pushback = byte


def read_line(buffer: LineBuffer, reader: PushbackReader) -> Optional[bytes]:
    """
    Read the next logical line into `buffer` and return its content.

    The end-of-line marker (\\r\\n, \\n or \\r) is consumed and dropped.
    Returns None once the stream is exhausted.
    """
    buffer.clear()
    saw_any = False
    prev: Optional[int] = None

    while True:
        byte = reader.read_byte()
        if byte is None:
            break
        saw_any = True

        if byte == LF:
            # MSDOS pair, drop the \r stored on the previous pass
            if prev == CR:
                buffer.strip_last()
            break
        if prev == CR:
            # lone \r ended a Mac line, this byte starts the next one
            reader.unread(byte)
            break

        buffer.append(byte)
        prev = byte

    # \r left over from a Mac line or from end of stream
    if buffer.last() == CR:
        buffer.strip_last()

    if buffer.length == 0 and not saw_any:
        return None

    buffer.terminate()
    return buffer.value()


def iter_lines(
    stream: BinaryIO, buffer: Optional[LineBuffer] = None
) -> Iterator[bytes]:
    """Yield every logical line of a binary stream."""
    if buffer is None:
        buffer = LineBuffer()
    reader = PushbackReader(stream)
    while True:
        line = read_line(buffer, reader)
        if line is None:
            return
        yield line


@dataclass(frozen=True)
class Config:
    """Settings for one run, resolved from the command line."""

    convention: Convention = Convention.MSDOS
    sources: Tuple[str, ...] = (STDIN_NAME,)
    verbose: bool = False
    progress: bool = False
    log_file: Optional[str] = None

    @property
    def reads_stdin(self) -> bool:
        return self.sources == (STDIN_NAME,)


class EolArgumentParser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors exit with EXIT_USAGE."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.exit(
            EXIT_USAGE,
            f"{self.prog}: {message}\n"
            f"Try '{self.prog} --help' for more information\n",
        )


class HelpAction(argparse.Action):
    """Print help to standard output and exit with EXIT_USAGE."""

    def __init__(
        self,
        option_strings: List[str],
        dest: str = argparse.SUPPRESS,
        default: str = argparse.SUPPRESS,
        help: Optional[str] = None,  # pylint: disable=redefined-builtin
    ) -> None:
        super().__init__(
            option_strings=option_strings,
            dest=dest,
            default=default,
            nargs=0,
            help=help,
        )

    def __call__(self, parser, namespace, values, option_string=None) -> None:
        parser.print_help()
        parser.exit(EXIT_USAGE)


def build_parser(prog: str = "eol2eol") -> EolArgumentParser:
    """Build the command-line parser."""
    parser = EolArgumentParser(
        prog=prog,
        usage="%(prog)s [OPTION] [FILE]...",
        description=(
            "Concatenate EOL-converted FILE(s), or standard input, "
            "to standard output.\n"
            "  Assumes there are no embedded EOL within each input line.\n"
            "  If there *are* embedded EOL, they will cause a new line "
            "in the output."
        ),
        epilog="With no FILE, or when FILE is -, read standard input.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        allow_abbrev=False,
    )

    conversion = parser.add_argument_group("conversion flags")
    conversion.add_argument(
        "--dos",
        "--msdos",
        dest="convention",
        action="store_const",
        const=Convention.MSDOS,
        help="convert EOL to \\r\\n (default)",
    )
    conversion.add_argument(
        "--mac",
        "--osx",
        dest="convention",
        action="store_const",
        const=Convention.MAC,
        help="convert EOL to \\r",
    )
    conversion.add_argument(
        "--unix",
        "--posix",
        "--linux",
        dest="convention",
        action="store_const",
        const=Convention.UNIX,
        help="convert EOL to \\n",
    )
    parser.set_defaults(convention=Convention.MSDOS)

    other = parser.add_argument_group("other options")
    other.add_argument(
        "--progress",
        action="store_true",
        help="show a progress bar over the input files on standard error",
    )
    other.add_argument(
        "--verbose", action="store_true", help="enable verbose logging"
    )
    other.add_argument(
        "--log-file",
        metavar="PATH",
        default=None,
        help="append log records to PATH",
    )
    other.add_argument(
        "-h", "--help", action=HelpAction, help="display this help and exit"
    )
    other.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s v{__version__}",
        help="output version information and exit",
    )

    parser.add_argument("files", nargs="*", metavar="FILE", help=argparse.SUPPRESS)
    return parser


def _shield_file_names(parser: EolArgumentParser, argv: List[str]) -> List[str]:
    """
    Mark single-dash file names so argparse cannot read them as short options.

    Only "-h" and a lone "-" keep their meaning; "-h.txt" or "-x" are files.
    A bare "--" is an unrecognized option unless it is the value of
    --log-file, where argparse reports the missing argument itself.
    """
    shielded: List[str] = []
    for index, token in enumerate(argv):
        is_value = index > 0 and argv[index - 1] == "--log-file"
        if token == "--" and not is_value:
            parser.error("unrecognized option '--'")
        if is_value or token in (STDIN_NAME, "-h") or not token.startswith("-"):
            shielded.append(token)
        elif token.startswith("--"):
            shielded.append(token)
        else:
            shielded.append(FILE_MARK + token)
    return shielded


def parse_args(argv: Optional[Sequence[str]] = None) -> Config:
    """
    Resolve command-line arguments into a Config.

    Every unknown token starting with "--" (including "--" itself) is a usage
    error. Other tokens, such as "-x", are taken as file names in the order
    they appear.
    """
    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()

    args, extras = parser.parse_known_intermixed_args(
        _shield_file_names(parser, list(argv))
    )
    for token in extras:
        parser.error(f"unrecognized option '{token}'")

    files = [
        name[len(FILE_MARK) :] if name.startswith(FILE_MARK) else name
        for name in args.files
    ]

    return Config(
        convention=args.convention,
        sources=tuple(files) if files else (STDIN_NAME,),
        verbose=args.verbose,
        progress=args.progress,
        log_file=args.log_file,
    )


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Send eol2eol log records to standard error and, optionally, a file."""
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(console)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)


def open_source(name: str) -> BinaryIO:
    """Open a named input file without any newline translation."""
    return open(name, "rb")  # pylint: disable=consider-using-with


def convert_stream(
    stream: BinaryIO,
    out: BinaryIO,
    convention: Convention,
    buffer: Optional[LineBuffer] = None,
) -> int:
    """Write every line of `stream` to `out` with the chosen terminator."""
    terminator = convention.terminator
    count = 0
    for line in iter_lines(stream, buffer):
        out.write(line + terminator)
        count += 1
    return count


def run(
    config: Config,
    stdin: Optional[BinaryIO] = None,
    stdout: Optional[BinaryIO] = None,
) -> int:
    """
    Convert all sources in order and return the number that failed to open.

    Files that cannot be opened are reported and skipped.
    """
    if stdin is None:
        stdin = sys.stdin.buffer
    if stdout is None:
        stdout = sys.stdout.buffer

    buffer = LineBuffer()

    if config.reads_stdin:
        count = convert_stream(stdin, stdout, config.convention, buffer)
        stdout.flush()
        logger.debug("Converted %d lines from standard input", count)
        return 0

    skipped = 0
    for name in tqdm(
        config.sources, desc="Converting", unit="file", disable=not config.progress
    ):
        try:
            source = open_source(name)
        except OSError as e:
            logger.error("%s: %s", name, e.strerror or str(e))
            skipped += 1
            continue

        with source:
            count = convert_stream(source, stdout, config.convention, buffer)
            stdout.flush()
        logger.debug("Converted %d lines from %s", count, name)

    logger.debug(
        "Processed: %d, Skipped: %d", len(config.sources) - skipped, skipped
    )
    return min(skipped, MAX_EXIT_STATUS)


def _silence_stdout() -> None:
    # Point stdout at devnull so the interpreter's final flush stays quiet
    try:
        stdout_fd = sys.stdout.fileno()
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, stdout_fd)
        os.close(devnull)
    except (OSError, ValueError, AttributeError) as e:
        logger.debug(
            "Could not redirect standard output to %s: %s", os.devnull, str(e)
        )


def main(argv: Optional[Sequence[str]] = None) -> int:
    config = parse_args(argv)
    try:
        configure_logging(config.verbose, config.log_file)
        logger.debug(
            "eol2eol v%s converting %d source(s) to %s",
            __version__,
            len(config.sources),
            config.convention.name,
        )
        return run(config)
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return 130
    except BrokenPipeError:
        logger.debug("Standard output was closed early")
        _silence_stdout()
        return 1
    except MemoryError:
        raise
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("An unexpected error occurred: %s", str(e))
        logger.debug("Traceback: %s", traceback.format_exc())
        return 1


if __name__ == "__main__":
    sys.exit(main())
