#!/usr/bin/env python
#
"""
Per connection state for the filter and the registry that holds it.
"""
# system imports
#
import asyncio
import logging
from typing import Dict, List, Optional

logger = logging.getLogger("rspamd_filter.session")


########################################################################
########################################################################
#
class Session:
    """
    The state we keep for one SMTP connection from smtpd.

    `link` holds what we learn about the connection (peer address, reverse
    dns, helo) and survives across transactions. `transaction` holds what we
    learn about the current message (queue id, envelope sender and
    recipient.)

    When the DATA phase begins both are copied in to `scan_headers`, which is
    what we hand to rspamd, and `transaction` is cleared. Nothing reads the
    metadata again once the body starts streaming.

    `pending_verdict` is set when the end of the message has been seen and a
    scan has been started. It is resolved exactly once by the scan task and
    consumed exactly once by the commit handler.
    """

    ####################################################################
    #
    def __init__(self, session_id: str):
        self.id = session_id
        self.link: Dict[str, str] = {}
        self.transaction: Dict[str, str] = {}
        self.scan_headers: Dict[str, str] = {}
        self.payload: List[str] = []
        self.pending_verdict: Optional[asyncio.Future] = None

    ####################################################################
    #
    def __repr__(self):
        return f"<Session {self.id}>"

    ####################################################################
    #
    def clear_transaction(self) -> None:
        self.transaction.clear()

    ####################################################################
    #
    def begin_data(self) -> None:
        """
        Freeze the metadata we will send along with the message and start
        a fresh payload.
        """
        self.scan_headers = {**self.link, **self.transaction}
        self.transaction.clear()
        self.payload = []

    ####################################################################
    #
    def take_message(self) -> str:
        """
        Return the accumulated message text and reset the payload.
        """
        message = "".join(f"{line}\n" for line in self.payload)
        self.payload = []
        return message

    ####################################################################
    #
    def take_verdict(self) -> Optional[asyncio.Future]:
        """
        Hand the pending verdict to the commit handler. After this the
        session is free to start another transaction.
        """
        verdict, self.pending_verdict = self.pending_verdict, None
        return verdict


########################################################################
########################################################################
#
class SessionRegistry:
    """
    Maps smtpd session ids to Sessions.

    Only the control loop reads or mutates the registry. Scan tasks are
    handed what they need when they are started and never look a session
    up.
    """

    ####################################################################
    #
    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    ####################################################################
    #
    def __len__(self) -> int:
        return len(self._sessions)

    ####################################################################
    #
    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    ####################################################################
    #
    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    ####################################################################
    #
    def create(self, session_id: str) -> Session:
        """
        Create a new Session, replacing any existing one with the same id.
        """
        if session_id in self._sessions:
            logger.warning("Replacing existing session %s", session_id)
        session = Session(session_id)
        self._sessions[session_id] = session
        return session

    ####################################################################
    #
    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
