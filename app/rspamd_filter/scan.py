#!/usr/bin/env python
#
"""
Dispatch one rspamd scan per message as an asyncio task.

The control loop hands us the message when smtpd sends the end of data
marker and gets back a future. The task posts the message to rspamd, writes
the rebuilt message back to smtpd, and resolves the future with the reject
reason. The commit handler is the only consumer of that future.

Every failure ends up as a temporary failure reason in the future. Nothing
raised inside a scan task ever reaches the control loop.
"""
# system imports
#
import asyncio
import logging
from typing import Dict, Optional, Set

# 3rd party imports
#
from django.conf import settings

# Project imports
#
from .protocol import OutputStream
from .reconstruct import reconstruct, split_message
from .rspamd import RspamdClient, ScanError

TEMPFAIL_REASON = "421 Temporary failure"

logger = logging.getLogger("rspamd_filter.scan")


########################################################################
########################################################################
#
class ScanDispatcher:

    ####################################################################
    #
    def __init__(
        self,
        client: RspamdClient,
        out: OutputStream,
        max_concurrent: Optional[int] = None,
    ):
        """
        `max_concurrent` bounds how many requests to rspamd are outstanding
        at once across all sessions. Each session only ever has one.
        """
        self.client = client
        self.out = out
        if max_concurrent is None:
            max_concurrent = settings.MAX_CONCURRENT_SCANS
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.tasks: Set[asyncio.Task] = set()

    ####################################################################
    #
    def dispatch(
        self, headers: Dict[str, str], token: str, session_id: str, message: str
    ) -> asyncio.Future:
        """
        Start scanning `message` and return the future its reject reason
        will be delivered through. Must be called from the event loop.
        """
        loop = asyncio.get_running_loop()
        verdict = loop.create_future()
        task = loop.create_task(
            self._run(verdict, dict(headers), token, session_id, message)
        )
        # Hold a reference so the task is not garbage collected mid-flight.
        #
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        logger.debug(
            "%s: dispatched scan, %d bytes, %d in flight",
            session_id,
            len(message),
            len(self.tasks),
        )
        return verdict

    ####################################################################
    #
    async def scan(
        self, headers: Dict[str, str], token: str, session_id: str, message: str
    ) -> str:
        """
        Scan the message, write the rebuilt message to smtpd and return the
        reject reason. Raises ScanError if there is no verdict to act on.
        """
        async with self.semaphore:
            verdict = await self.client.check(headers, message)
        logger.info(
            "%s: rspamd verdict: action: '%s', score: %s / %s",
            session_id,
            verdict.action,
            verdict.score,
            verdict.required_score,
        )
        msg_headers, body = split_message(message)
        return reconstruct(
            self.out, token, session_id, msg_headers, body, verdict
        )

    ####################################################################
    #
    async def _run(
        self,
        verdict: asyncio.Future,
        headers: Dict[str, str],
        token: str,
        session_id: str,
        message: str,
    ) -> None:
        try:
            reason = await self.scan(headers, token, session_id, message)
        except ScanError as exc:
            logger.error("%s: scan failed: %s", session_id, exc)
            reason = TEMPFAIL_REASON
        except Exception:
            logger.exception("%s: unexpected error while scanning", session_id)
            reason = TEMPFAIL_REASON

        # The future is only ever cancelled when we are shutting down.
        #
        if not verdict.done():
            verdict.set_result(reason)

    ####################################################################
    #
    async def drain(self) -> None:
        """
        Wait for every scan in flight to finish.
        """
        while self.tasks:
            await asyncio.gather(*list(self.tasks))
