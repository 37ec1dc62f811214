#!/usr/bin/env python
#
"""
The OpenSMTPD filter line protocol.

smtpd talks to a filter over a pair of pipes. Every line it writes to us is a
pipe (`|`) separated list of fields. The positions are fixed:

    0: stream kind, `report` or `filter`
    1: protocol version
    2: timestamp
    3: subsystem (always `smtp-in` for us)
    4: event name
    5: session id
    6+: event specific. For `filter` events position 6 is the token we have
        to echo back in our response.

Fields are positional, not named. We do not validate field counts beyond
what a handler asks for via `Event.field()`.

During start up smtpd also sends us `config|<key>|<value>` lines, ending
with `config|ready`.
"""
# system imports
#
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, TextIO, Tuple

DELIMITER = "|"
SUBSYSTEM = "smtp-in"
END_OF_DATA = "."

REPORT = "report"
FILTER = "filter"
CONFIG = "config"

logger = logging.getLogger("rspamd_filter.protocol")


########################################################################
########################################################################
#
class ProtocolError(Exception):
    """
    Raised when a line from smtpd can not be decoded. Once this happens we
    can no longer reliably attribute lines to sessions and the filter must
    stop.
    """

    pass


########################################################################
########################################################################
#
@dataclass(frozen=True)
class Event:
    kind: str
    version: str
    timestamp: str
    subsystem: str
    name: str
    session_id: str
    fields: Tuple[str, ...]

    ####################################################################
    #
    def field(self, position: int) -> str:
        """
        Return the field at the given absolute position in the line.
        Raises ProtocolError if the line is too short for what the handler
        for this event expects.
        """
        try:
            return self.fields[position]
        except IndexError:
            raise ProtocolError(
                f"'{self.name}' event for session {self.session_id} has "
                f"no field {position}: {DELIMITER.join(self.fields)!r}"
            )

    ####################################################################
    #
    def rest(self, position: int) -> str:
        """
        Return everything from `position` to the end of the line. Free text
        like a data line may itself contain the delimiter.
        """
        self.field(position)
        return DELIMITER.join(self.fields[position:])

    ####################################################################
    #
    @property
    def token(self) -> str:
        if self.kind != FILTER:
            raise ProtocolError(f"'{self.name}' is not a filter event")
        return self.field(6)


########################################################################
########################################################################
#
@dataclass(frozen=True)
class ConfigLine:
    key: str
    value: str

    @property
    def ready(self) -> bool:
        return self.key == "ready"


########################################################################
#
def decode_line(
    line: str, registry: Optional[Dict[str, Tuple[str, object]]] = None
) -> Event | ConfigLine:
    """
    Decode one line from smtpd.

    If `registry` is given the event name must be one of its keys and the
    stream kind must be the one the event was registered with.

    Raises ProtocolError on anything we can not make sense of.
    """
    line = line.rstrip("\r\n")
    fields = tuple(line.split(DELIMITER))

    if fields[0] == CONFIG:
        if len(fields) < 2:
            raise ProtocolError(f"Malformed config line: {line!r}")
        return ConfigLine(key=fields[1], value=DELIMITER.join(fields[2:]))

    if len(fields) < 6:
        raise ProtocolError(f"Malformed line, too few fields: {line!r}")

    kind, version, timestamp, subsystem, name, session_id = fields[:6]
    if kind not in (REPORT, FILTER):
        raise ProtocolError(f"Unknown stream kind '{kind}': {line!r}")

    if registry is not None:
        if name not in registry:
            raise ProtocolError(f"Unregistered event '{name}': {line!r}")
        registered_kind = registry[name][0]
        if registered_kind != kind:
            raise ProtocolError(
                f"'{name}' registered as {registered_kind}, got {kind}: "
                f"{line!r}"
            )

    return Event(
        kind=kind,
        version=version,
        timestamp=timestamp,
        subsystem=subsystem,
        name=name,
        session_id=session_id,
        fields=fields,
    )


########################################################################
#
def filter_result(token: str, session_id: str, reason: str = "") -> str:
    """
    The decision line for a `filter` event. An empty reason means proceed.
    """
    if reason:
        return DELIMITER.join(
            ("filter-result", token, session_id, "reject", reason)
        )
    return DELIMITER.join(("filter-result", token, session_id, "proceed"))


########################################################################
#
def filter_dataline(token: str, session_id: str, line: str) -> str:
    return DELIMITER.join(("filter-dataline", token, session_id, line))


########################################################################
#
def registration_lines(
    registry: Dict[str, Tuple[str, object]],
) -> List[str]:
    """
    The lines we send smtpd at start up telling it which events we want,
    followed by the line saying we are ready.
    """
    lines = [
        DELIMITER.join(("register", kind, SUBSYSTEM, name))
        for name, (kind, _) in registry.items()
    ]
    lines.append(DELIMITER.join(("register", "ready")))
    return lines


########################################################################
########################################################################
#
class OutputStream:
    """
    Line oriented writer for our responses to smtpd. Every line is flushed
    immediately since smtpd is waiting on it.

    All writes happen on the event loop's thread so whole lines never
    interleave.
    """

    ####################################################################
    #
    def __init__(self, stream: TextIO):
        self.stream = stream

    ####################################################################
    #
    def write_line(self, line: str) -> None:
        self.stream.write(line + "\n")
        self.stream.flush()

    ####################################################################
    #
    def write_lines(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.write_line(line)
