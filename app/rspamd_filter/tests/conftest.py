#!/usr/bin/env python
#
"""
pytest fixtures for our tests
"""
# system imports
#
import io
import json

# 3rd party imports
#
import pytest
import requests
from pytest_mock import MockerFixture

# Project imports
#
from ..filter import FilterHandler
from ..protocol import OutputStream
from ..rspamd import RspamdClient
from ..scan import ScanDispatcher

RSPAMD_TEST_URL = "http://rspamd.test:11333/checkv2"


########################################################################
########################################################################
#
class CapturedOutput(OutputStream):
    """
    An OutputStream that writes to a StringIO so tests can look at what
    we would have sent to smtpd.
    """

    ####################################################################
    #
    def __init__(self):
        super().__init__(io.StringIO())

    ####################################################################
    #
    @property
    def lines(self):
        return self.stream.getvalue().split("\n")[:-1]

    ####################################################################
    #
    def datalines(self, session_id=None):
        """
        The content of the `filter-dataline` lines, optionally only those
        for the given session.
        """
        result = []
        for line in self.lines:
            fields = line.split("|", 3)
            if fields[0] != "filter-dataline":
                continue
            if session_id is not None and fields[2] != session_id:
                continue
            result.append(fields[3])
        return result

    ####################################################################
    #
    def results(self, session_id=None):
        return [
            line
            for line in self.lines
            if line.startswith("filter-result|")
            and (session_id is None or line.split("|")[2] == session_id)
        ]


####################################################################
#
@pytest.fixture(autouse=True)
def rspamd_settings(settings):
    """
    Make sure no test ever points at a real rspamd.
    """
    settings.RSPAMD_URL = RSPAMD_TEST_URL
    settings.RSPAMD_TIMEOUT = None
    settings.MAX_CONCURRENT_SCANS = 4
    settings.SENTRY_DSN = None
    return settings


####################################################################
#
@pytest.fixture
def output() -> CapturedOutput:
    return CapturedOutput()


####################################################################
#
@pytest.fixture
def rspamd_response(mocker: MockerFixture):
    """
    Returns a function that builds a mock `requests.Response` whose body is
    the JSON encoding of the keyword arguments passed to it.
    """

    def make_response(status_code=200, **kwargs):
        data = {
            "score": 0.0,
            "required_score": 15.0,
            "action": "no action",
            "subject": "",
            "symbols": {},
        }
        data.update(kwargs)
        response = mocker.Mock(spec=requests.Response)
        response.status_code = status_code
        response.content = json.dumps(data).encode()
        if status_code >= 400:
            response.raise_for_status.side_effect = requests.HTTPError(
                f"{status_code} Server Error"
            )
        return response

    return make_response


####################################################################
#
@pytest.fixture
def mock_rspamd_post(mocker: MockerFixture, rspamd_response):
    """
    Mock `requests.post` as used by the rspamd client. By default rspamd
    answers with "no action". Tests set `return_value` or `side_effect` to
    change that.
    """
    return mocker.patch(
        "rspamd_filter.rspamd.requests.post",
        return_value=rspamd_response(),
    )


####################################################################
#
@pytest.fixture
def rspamd_client() -> RspamdClient:
    return RspamdClient()


####################################################################
#
@pytest.fixture
def dispatcher(rspamd_client, output) -> ScanDispatcher:
    return ScanDispatcher(rspamd_client, output)


####################################################################
#
@pytest.fixture
def filter_handler(output, dispatcher) -> FilterHandler:
    return FilterHandler(output, dispatcher)


####################################################################
#
@pytest.fixture
def report_line():
    """
    Returns a function that builds a `report` line like smtpd sends.
    """

    def make_line(event, session_id, *args):
        return "|".join(
            ("report", "0.4", "1576146008.006099", "smtp-in", event, session_id)
            + args
        )

    return make_line


####################################################################
#
@pytest.fixture
def filter_line():
    """
    Returns a function that builds a `filter` line like smtpd sends.
    """

    def make_line(event, session_id, token, *args):
        return "|".join(
            (
                "filter",
                "0.4",
                "1576146008.006099",
                "smtp-in",
                event,
                session_id,
                token,
            )
            + args
        )

    return make_line


####################################################################
#
@pytest.fixture
def smtp_transaction(report_line, filter_line):
    """
    Returns a function that produces the lines smtpd sends for one
    connection delivering one message: connect, helo, MAIL FROM, RCPT TO,
    DATA, the message lines, the end of data marker and the commit.
    Disconnect is not included.
    """

    def make_lines(
        session_id="7641df9771b4ed00",
        token="1ef1c203cc576e5d",
        message_lines=("Subject: hi", "", "body"),
        src="192.0.2.10:41312",
        rdns="mx.example",
        helo="mx.example",
        queue_id="Q1",
        mail_from="a@x",
        rcpt_to="b@y",
    ):
        lines = [
            report_line(
                "link-connect", session_id, rdns, "pass", src, "192.0.2.1:25"
            ),
            report_line("link-identify", session_id, helo),
            report_line("tx-begin", session_id, queue_id),
            report_line("tx-mail", session_id, queue_id, mail_from, "ok"),
            report_line("tx-rcpt", session_id, queue_id, rcpt_to, "ok"),
            report_line("tx-data", session_id, queue_id, "ok"),
        ]
        for line in message_lines:
            lines.append(filter_line("data-line", session_id, token, line))
        lines.append(filter_line("data-line", session_id, token, "."))
        lines.append(filter_line("commit", session_id, token))
        return lines

    return make_lines
