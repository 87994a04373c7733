"""
ShareDir protocol — command grammar, response tokens and small parsers.

Wire format (TCP):
  UTF-8 text lines terminated by "\\n", interleaved with raw binary
  segments whose length is always given by the line right before them.

Command line:
  VERB [argument]        verb is case-insensitive, the argument is the rest
                         of the line after the first space (may contain
                         spaces, never a newline)

File download (GET):
  S: SENDING_FILE
  S: <length>
  S: <length raw bytes>
  S: END_OF_FILE

Directory download (GETDIR):
  S: SENDING_DIR
  S: <count>
  S: ( <relative path> / <length> / <length raw bytes> ) * count
  S: END_OF_DIR

Uploads (PUT / PUTDIR) mirror the above; see transfer.py.

Server response texts are matched verbatim by deployed Windows clients,
which is why most of them are Vietnamese and must not be reworded.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import ProtocolViolation

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_PORT: int = 2121
ENCODING: str = "utf-8"
MAX_LINE_BYTES: int = 64 * 1024
DEFAULT_CHUNK_BYTES: int = 64 * 1024
MAX_GET_ATTEMPTS: int = 3


# ---------------------------------------------------------------------------
# Verbs
# ---------------------------------------------------------------------------

class Verb(str, Enum):
    LIST   = "LIST"
    CD     = "CD"
    CDUP   = "CDUP"
    MKDIR  = "MKDIR"
    GET    = "GET"
    GETDIR = "GETDIR"
    PUT    = "PUT"
    PUTDIR = "PUTDIR"
    DELETE = "DELETE"
    RMDIR  = "RMDIR"
    NOOP   = "NOOP"
    QUIT   = "QUIT"


# ---------------------------------------------------------------------------
# Response tokens (structural)
# ---------------------------------------------------------------------------

SENDING_FILE  = "SENDING_FILE"
SENDING_DIR   = "SENDING_DIR"
READY_FOR_DIR = "READY_FOR_DIR"
END_OF_FILE   = "END_OF_FILE"
END_OF_DIR    = "END_OF_DIR"
END_OF_LIST   = "END_OF_LIST"
OK            = "OK"
OK_PREFIX     = "OK:"
BYE           = "Bye"

FOLDER_PREFIX = "[Folder] "
FILE_PREFIX   = "[File] "


# ---------------------------------------------------------------------------
# Response texts (human readable, wire compatible)
# ---------------------------------------------------------------------------

BANNER              = "Chào mừng đến với ShareDir Server!"
LIST_HEADER         = "DANH SÁCH THƯ MỤC VÀ FILE:"
INVALID_COMMAND     = "Lệnh không hợp lệ."
PATH_REJECTED       = "Đường dẫn không hợp lệ."
MISSING_DIR_NAME    = "Thiếu tên thư mục."
MISSING_FILE_NAME   = "Thiếu tên file."
CD_FAILED           = "Không thể truy cập thư mục."
DIR_CREATED         = "Thư mục đã được tạo."
MKDIR_FAILED        = "Lỗi khi tạo thư mục: "
FILE_NOT_FOUND      = "File không tồn tại."
DIR_NOT_FOUND       = "Thư mục không tồn tại."
FILE_DELETED        = "File đã được xóa."
DELETE_FAILED       = "Lỗi xóa file: "
DIR_DELETED         = "Thư mục đã được xóa thành công."
RMDIR_FAILED        = "Không thể xóa thư mục sau 3 lần thử."
ROOT_PROTECTED      = "Lỗi: Không thể xóa thư mục gốc của Server."
LIST_ACCESS_DENIED  = "Lỗi: Không có quyền truy cập."
LIST_FAILED         = "Lỗi khi đọc thư mục: "
PUT_NOT_CONFIRMED   = "Lỗi giao thức: Client không xác nhận."
PUT_BAD_SIZE        = "Kích thước file không hợp lệ."
PUT_RECEIVED        = "Đã nhận file thành công!"
PUT_SAVE_FAILED     = "Lỗi server khi lưu file."
PUTDIR_NOT_CONFIRMED = "Lỗi giao thức: Client không xác nhận gửi thư mục."
PUTDIR_BAD_COUNT    = "Số lượng file không hợp lệ."
PUTDIR_MKDIR_FAILED = "Lỗi server khi tạo thư mục."
PUTDIR_RECEIVED     = "Đã nhận thư mục thành công!"
CDUP_FAILED         = "Lỗi khi di chuyển lên thư mục cha: "


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Command:
    verb: Verb | None        # None for an unknown verb
    argument: str = ""
    raw_verb: str = ""

    def to_line(self) -> str:
        assert self.verb is not None
        return f"{self.verb.value} {self.argument}" if self.argument else self.verb.value


@dataclass(frozen=True)
class ListingEntry:
    name: str
    is_folder: bool

    @property
    def kind(self) -> str:
        return "folder" if self.is_folder else "file"

    def __str__(self) -> str:
        return format_listing_entry(self)


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def command_line(verb: Verb, argument: str = "") -> str:
    """Build a command line, refusing arguments that would break framing."""
    if "\n" in argument or "\r" in argument:
        raise ValueError(f"Argument must not contain a line break: {argument!r}")
    return Command(verb, argument).to_line()


def format_listing_entry(entry: ListingEntry) -> str:
    return (FOLDER_PREFIX if entry.is_folder else FILE_PREFIX) + entry.name


def format_virtual_ok(virtual_path: str) -> str:
    return OK_PREFIX + (virtual_path or "/")


# ---------------------------------------------------------------------------
# Decoding helpers
# ---------------------------------------------------------------------------

def parse_command(line: str) -> Command:
    """
    Split one line into verb + argument.

    Leading whitespace is ignored; the argument is everything after the
    first space following the verb and is otherwise left untouched.
    """
    text = line.lstrip()
    raw_verb, _, argument = text.partition(" ")
    try:
        verb: Verb | None = Verb(raw_verb.upper())
    except ValueError:
        verb = None
    return Command(verb=verb, argument=argument, raw_verb=raw_verb)


def parse_length(line: str) -> int:
    """Decode a non-negative byte length header."""
    try:
        value = int(line.strip())
    except (ValueError, AttributeError):
        raise ProtocolViolation(f"Invalid length line: {line!r}", got=line) from None
    if value < 0:
        raise ProtocolViolation(f"Negative length: {value}", got=line)
    return value


def parse_count(line: str) -> int:
    """Decode a non-negative file count header."""
    try:
        value = int(line.strip())
    except (ValueError, AttributeError):
        raise ProtocolViolation(f"Invalid file count line: {line!r}", got=line) from None
    if value < 0:
        raise ProtocolViolation(f"Negative file count: {value}", got=line)
    return value


def parse_listing_line(line: str) -> ListingEntry | None:
    """Return the entry for a ``[Folder]``/``[File]`` line, None for anything else."""
    if line.startswith(FOLDER_PREFIX):
        return ListingEntry(name=line[len(FOLDER_PREFIX):].strip(), is_folder=True)
    if line.startswith(FILE_PREFIX):
        return ListingEntry(name=line[len(FILE_PREFIX):].strip(), is_folder=False)
    return None


def parse_virtual_ok(line: str) -> str | None:
    """Return the virtual path carried by an ``OK:<path>`` line, else None."""
    if not line.startswith(OK_PREFIX):
        return None
    path = line[len(OK_PREFIX):].strip().replace("\\", "/")
    if not path.startswith("/"):
        path = "/" + path
    return path


def expect(line: str, token: str) -> None:
    """Raise ProtocolViolation unless *line* is exactly *token*."""
    if line != token:
        raise ProtocolViolation(f"Expected {token}, got {line!r}", got=line)
