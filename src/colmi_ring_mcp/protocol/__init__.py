"""Protocol layer: frame codec, command builders, response parsing, and correlation."""

from .framing import Frame, build_frame, parse_frame
from .commands import Command, build_command
from .parser import parse_response
from .client import COMMAND_TABLE, CommandProtocol, Operation
