#!/usr/bin/env python
#
"""
Talk to rspamd's `/checkv2` HTTP endpoint.

We send the raw message as the request body and what we know about the SMTP
session (peer address, helo, envelope sender and recipient, queue id) as
request headers. rspamd answers with a JSON verdict. We only care about a
handful of its fields.
"""
# system imports
#
import logging
from typing import Dict, List, Optional

# 3rd party imports
#
import requests
from asgiref.sync import sync_to_async
from django.conf import settings
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

logger = logging.getLogger("rspamd_filter.rspamd")


########################################################################
########################################################################
#
class ScanError(Exception):
    """
    Raised when we could not get a usable verdict for a message, be it
    because rspamd was unreachable, answered with garbage, or the message
    itself could not be parsed.
    """

    pass


########################################################################
########################################################################
#
class RspamdVerdict(BaseModel):
    """
    The parts of rspamd's checkv2 response we use.

    rspamd sends `dkim-signature` as a string when it signed the message once
    and as a list when it signed it with several keys.
    """

    model_config = ConfigDict(populate_by_name=True)

    score: float = 0.0
    required_score: float = 0.0
    subject: str = ""
    action: str = ""
    dkim_signatures: List[str] = Field(
        default_factory=list, alias="dkim-signature"
    )

    ####################################################################
    #
    @field_validator("dkim_signatures", mode="before")
    @classmethod
    def _listify_signature(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value else []
        return value


########################################################################
#
def encode_headers(headers: Dict[str, str]) -> Dict[str, bytes]:
    """
    Encode header values the same way as the message. http.client would
    otherwise encode them as latin-1 and choke on SMTPUTF8 addresses.
    """
    return {
        name: value.encode("utf-8", errors="surrogateescape")
        for name, value in headers.items()
    }


########################################################################
########################################################################
#
class RspamdClient:
    """
    A thin wrapper around `requests.post` to rspamd. No retries: if the
    call fails the message gets a temporary failure and smtpd's peer will
    try again later.
    """

    ####################################################################
    #
    def __init__(
        self, url: Optional[str] = None, timeout: Optional[float] = None
    ):
        self.url = url if url else settings.RSPAMD_URL
        self.timeout = (
            timeout if timeout is not None else settings.RSPAMD_TIMEOUT
        )

    ####################################################################
    #
    def __repr__(self):
        return f"<RspamdClient {self.url}>"

    ####################################################################
    #
    def post(self, headers: Dict[str, str], message: str) -> RspamdVerdict:
        """
        Synchronous. Use `check()` from async code.

        Raises ScanError on any transport, HTTP status or decode failure.
        """
        try:
            r = requests.post(
                self.url,
                headers=encode_headers(headers),
                data=message.encode("utf-8", errors="surrogateescape"),
                timeout=self.timeout,
            )
            r.raise_for_status()
            return RspamdVerdict.model_validate_json(r.content)
        except requests.RequestException as exc:
            raise ScanError(
                f"rspamd request to {self.url} failed: {exc!r}"
            ) from exc
        except ValidationError as exc:
            raise ScanError(f"Unable to decode rspamd response: {exc}") from exc

    ####################################################################
    #
    async def check(
        self, headers: Dict[str, str], message: str
    ) -> RspamdVerdict:
        """
        Run the blocking HTTP request in a worker thread so the event loop
        can keep reading from smtpd.
        """
        return await sync_to_async(self.post, thread_sensitive=False)(
            headers, message
        )
