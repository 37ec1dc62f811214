#!/usr/bin/env python
#
"""
Turn an rspamd verdict in to the message we hand back to smtpd.

smtpd expects the whole message back from us, one `filter-dataline` per
line, terminated by a lone `.`. Along the way we apply the header changes
the verdict asks for. Whether the message is accepted is decided by the
reason string we return. The commit handler is the one that writes it.
"""
# system imports
#
import email.policy
import logging
from email.errors import MessageDefect
from email.parser import HeaderParser
from typing import List, Tuple

# Project imports
#
from .protocol import END_OF_DATA, OutputStream, filter_dataline
from .rspamd import RspamdVerdict, ScanError

SPAM_HEADER = "X-Spam"
SPAM_SCORE_HEADER = "X-Spam-Score"
DKIM_SIGNATURE_HEADER = "DKIM-Signature"

# rspamd actions that mean the message is not to be accepted, and the SMTP
# reply to give for them.
#
REJECT_REASONS = {
    "reject": "550 message rejected",
    "greylist": "421 greylisted",
    "soft reject": "451 try again later",
}

# compat32 leaves header values as they appeared on the wire. We only want
# headers and body split apart, not re-folded or re-encoded.
#
MESSAGE_POLICY = email.policy.compat32.clone(raise_on_defect=True)

Headers = List[Tuple[str, str]]

logger = logging.getLogger("rspamd_filter.reconstruct")


########################################################################
#
def split_message(message: str) -> Tuple[Headers, str]:
    """
    Split the message text in to its list of (name, value) headers, in
    original order, and its body.

    Raises ScanError if the message does not have a header block followed by
    a blank line.
    """
    if message.startswith("\n"):
        return [], message[1:]
    try:
        end = message.index("\n\n")
    except ValueError:
        raise ScanError("Message has no blank line between headers and body")

    # The body is taken verbatim. The email package would decode 8-bit
    # content on the way out.
    #
    header_block, body = message[: end + 2], message[end + 2 :]
    try:
        msg = HeaderParser(policy=MESSAGE_POLICY).parsestr(header_block)
    except MessageDefect as exc:
        raise ScanError(f"Malformed message: {exc!r}") from exc
    return list(msg.raw_items()), body


########################################################################
#
def set_header(headers: Headers, name: str, value: str) -> None:
    """
    Set `name` to `value`. If the header exists the first occurrence is
    replaced in place and any others are dropped. Otherwise it is appended.
    """
    lname = name.lower()
    found = [i for i, (hdr, _) in enumerate(headers) if hdr.lower() == lname]
    if not found:
        headers.append((name, value))
        return
    headers[found[0]] = (headers[found[0]][0], value)
    for i in reversed(found[1:]):
        del headers[i]


########################################################################
#
def format_score(value: float) -> str:
    """
    Shortest form of the score, without a trailing `.0` on whole numbers.
    """
    return repr(float(value)).removesuffix(".0")


########################################################################
#
def apply_verdict(headers: Headers, verdict: RspamdVerdict) -> str:
    """
    Apply the header mutations for the verdict's action and return the
    reject reason, or "" if the message is to be accepted.
    """
    match verdict.action:
        case "add header":
            set_header(headers, SPAM_HEADER, "yes")
            set_header(
                headers,
                SPAM_SCORE_HEADER,
                f"{format_score(verdict.score)} / "
                f"{format_score(verdict.required_score)}",
            )
        case "rewrite subject":
            set_header(headers, "Subject", verdict.subject)
    return REJECT_REASONS.get(verdict.action, "")


########################################################################
#
def body_lines(body: str) -> List[str]:
    if not body:
        return []
    lines = body.split("\n")
    if body.endswith("\n"):
        lines.pop()
    return lines


########################################################################
#
def header_lines(name: str, value: str) -> List[str]:
    """
    The physical lines of a header. Folds may be CRLF or bare LF.
    """
    return f"{name}: {value}".replace("\r\n", "\n").split("\n")


########################################################################
#
def output_lines(
    headers: Headers, body: str, verdict: RspamdVerdict
) -> List[str]:
    """
    The message as smtpd should receive it, one entry per line: DKIM
    signatures from rspamd first, the remaining headers in their original
    order, a blank line, the body and finally the end of data marker.
    """
    # A folded header, ours or rspamd's signature, is sent as its physical
    # lines.
    #
    lines = []
    for sig in verdict.dkim_signatures:
        lines.extend(header_lines(DKIM_SIGNATURE_HEADER, sig))
    for name, value in headers:
        lines.extend(header_lines(name, value))
    lines.append("")
    lines.extend(body_lines(body))
    lines.append(END_OF_DATA)
    return lines


########################################################################
#
def reconstruct(
    out: OutputStream,
    token: str,
    session_id: str,
    headers: Headers,
    body: str,
    verdict: RspamdVerdict,
) -> str:
    """
    Write the message, modified according to `verdict`, back to smtpd and
    return the reject reason ("" to proceed.)
    """
    reason = apply_verdict(headers, verdict)
    out.write_lines(
        filter_dataline(token, session_id, line)
        for line in output_lines(headers, body, verdict)
    )
    if reason:
        logger.info(
            "%s: rspamd action '%s': %s", session_id, verdict.action, reason
        )
    return reason
