#!/usr/bin/env python
#
"""
The filter's control loop and per session state machine.

A single coroutine reads lines from smtpd in the order they arrive, decodes
them and calls the handler registered for the event. Handlers run
synchronously on the loop. The only things that run concurrently are the
rspamd scans (see `scan.py`) and the waits for their verdicts at commit
time, so one slow scan never holds up other sessions.
"""
# system imports
#
import asyncio
import logging
from typing import Callable, Dict, Set, Tuple

# Project imports
#
from .protocol import (
    END_OF_DATA,
    FILTER,
    REPORT,
    ConfigLine,
    Event,
    OutputStream,
    ProtocolError,
    decode_line,
    filter_result,
    registration_lines,
)
from .scan import ScanDispatcher
from .session import Session, SessionRegistry

# Source addresses smtpd reports for connections that did not come in over
# the network.
#
LOCAL_ADDRESSES = ("local", "unix")

Handler = Callable[[Session, Event], None]

logger = logging.getLogger("rspamd_filter.filter")


########################################################################
#
def peer_address(src: str) -> str:
    """
    Strip the port from a `link-connect` source address. Handles
    `1.2.3.4:25`, `[2001:db8::1]:25` and `unix:/path` forms.
    """
    if src.startswith("["):
        return src[1:].split("]", 1)[0]
    if src.count(":") == 1:
        return src.split(":", 1)[0]
    return src


########################################################################
########################################################################
#
class FilterHandler:
    """
    Owns the session registry and routes each event from smtpd to its
    handler.
    """

    ####################################################################
    #
    def __init__(self, out: OutputStream, dispatcher: ScanDispatcher):
        self.out = out
        self.dispatcher = dispatcher
        self.sessions = SessionRegistry()
        self.waiters: Set[asyncio.Task] = set()

        self.handlers: Dict[str, Tuple[str, Handler]] = {
            "link-connect": (REPORT, self.link_connect),
            "link-disconnect": (REPORT, self.link_disconnect),
            "link-identify": (REPORT, self.link_identify),
            "tx-begin": (REPORT, self.tx_begin),
            "tx-mail": (REPORT, self.tx_mail),
            "tx-rcpt": (REPORT, self.tx_rcpt),
            "tx-data": (REPORT, self.tx_data),
            "tx-commit": (REPORT, self.tx_cleanup),
            "tx-rollback": (REPORT, self.tx_cleanup),
            "commit": (FILTER, self.filter_commit),
            "data-line": (FILTER, self.filter_data_line),
        }

    ####################################################################
    #
    def register(self) -> None:
        """
        Tell smtpd which events we want and that we are ready for them.
        """
        self.out.write_lines(registration_lines(self.handlers))

    ####################################################################
    #
    async def run(self, reader: asyncio.StreamReader) -> None:
        """
        Read and handle lines until smtpd closes our stdin, then wait for
        any scans and decisions still outstanding.

        ProtocolError propagates out of here. There is no recovering from
        a line we can not decode.
        """
        while True:
            try:
                raw = await reader.readline()
            except ValueError as exc:
                raise ProtocolError(f"Unable to read line from smtpd: {exc}")
            if not raw:
                break
            self.handle_line(raw.decode("utf-8", errors="surrogateescape"))
        logger.info(
            "smtpd closed the connection, %d sessions open", len(self.sessions)
        )
        await self.drain()

    ####################################################################
    #
    async def drain(self) -> None:
        await self.dispatcher.drain()
        while self.waiters:
            await asyncio.gather(*list(self.waiters))

    ####################################################################
    #
    def handle_line(self, line: str) -> None:
        decoded = decode_line(line, self.handlers)
        if isinstance(decoded, ConfigLine):
            logger.debug("config: %s: %s", decoded.key, decoded.value)
            return
        self.handle_event(decoded)

    ####################################################################
    #
    def handle_event(self, event: Event) -> None:
        """
        A connect creates the session first and is then handled like any
        other event. Events for sessions we do not know are dropped.
        """
        if event.name == "link-connect":
            self.sessions.create(event.session_id)

        session = self.sessions.get(event.session_id)
        if session is None:
            logger.debug(
                "Dropping '%s' for unknown session %s",
                event.name,
                event.session_id,
            )
            return

        _, handler = self.handlers[event.name]
        handler(session, event)

    ####################################################################
    #
    # Report handlers. These collect what we will tell rspamd about the
    # message.
    #
    def link_connect(self, session: Session, event: Event) -> None:
        rdns, src = event.field(6), event.field(8)
        session.link["Pass"] = "all"
        addr = peer_address(src)
        if addr.split(":", 1)[0] not in LOCAL_ADDRESSES:
            session.link["Ip"] = addr
        if rdns:
            session.link["Hostname"] = rdns

    ####################################################################
    #
    def link_disconnect(self, session: Session, event: Event) -> None:
        self.sessions.remove(session.id)

    ####################################################################
    #
    def link_identify(self, session: Session, event: Event) -> None:
        # Newer protocol versions send the method (HELO/EHLO) before the
        # identity. The identity is always last.
        #
        event.field(6)
        session.link["Helo"] = event.fields[-1]

    ####################################################################
    #
    def tx_begin(self, session: Session, event: Event) -> None:
        session.transaction["Queue-Id"] = event.field(6)

    ####################################################################
    #
    def tx_mail(self, session: Session, event: Event) -> None:
        mail_from, status = event.field(7), event.field(8)
        if status == "ok":
            session.transaction["From"] = mail_from

    ####################################################################
    #
    def tx_rcpt(self, session: Session, event: Event) -> None:
        rcpt_to, status = event.field(7), event.field(8)
        if status == "ok":
            session.transaction["Rcpt"] = rcpt_to

    ####################################################################
    #
    def tx_data(self, session: Session, event: Event) -> None:
        if event.field(7) == "ok":
            session.begin_data()

    ####################################################################
    #
    def tx_cleanup(self, session: Session, event: Event) -> None:
        session.clear_transaction()

    ####################################################################
    #
    # Filter handlers. smtpd waits for our response to these.
    #
    def filter_data_line(self, session: Session, event: Event) -> None:
        token, line = event.token, event.rest(7)
        if line != END_OF_DATA:
            session.payload.append(line)
            return

        if session.pending_verdict is not None:
            logger.warning(
                "%s: end of data while a scan is still pending, ignoring",
                session.id,
            )
            return
        session.pending_verdict = self.dispatcher.dispatch(
            session.scan_headers, token, session.id, session.take_message()
        )

    ####################################################################
    #
    def filter_commit(self, session: Session, event: Event) -> None:
        """
        Respond with the verdict's decision. If the scan is still running
        the response is written by a waiter task once it finishes, after
        the scan has written the message.
        """
        token = event.token
        verdict = session.take_verdict()
        if verdict is None:
            logger.warning("%s: commit without a scanned message", session.id)
            self.out.write_line(filter_result(token, session.id))
            return

        if verdict.done():
            self.out.write_line(
                filter_result(token, session.id, verdict.result())
            )
            return

        waiter = asyncio.get_running_loop().create_task(
            self._await_decision(session, token, verdict)
        )
        self.waiters.add(waiter)
        waiter.add_done_callback(self.waiters.discard)

    ####################################################################
    #
    async def _await_decision(
        self, session: Session, token: str, verdict: asyncio.Future
    ) -> None:
        reason = await verdict
        if self.sessions.get(session.id) is not session:
            logger.info(
                "%s: session went away before its verdict arrived", session.id
            )
            return
        self.out.write_line(filter_result(token, session.id, reason))
