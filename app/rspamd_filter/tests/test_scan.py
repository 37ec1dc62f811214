#!/usr/bin/env python
#
"""
Test dispatching scans and resolving their verdicts.
"""
# system imports
#
import asyncio

# 3rd party imports
#
import pytest
import requests

# Project imports
#
from ..rspamd import encode_headers
from ..scan import TEMPFAIL_REASON, ScanDispatcher

MESSAGE = "Subject: hi\n\nbody\n"
HEADERS = {"Ip": "192.0.2.10", "Helo": "mx.example"}


########################################################################
########################################################################
#
class TestScanDispatcher:

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_dispatch_proceed(self, dispatcher, output, mock_rspamd_post):
        """
        Given rspamd answering "no action"
        When a scan is dispatched
        Then the message is written back and the verdict resolves to no
             reject reason
        """
        verdict = dispatcher.dispatch(HEADERS, "tok", "abc", MESSAGE)
        assert not verdict.done()

        assert await verdict == ""
        assert output.datalines("abc") == ["Subject: hi", "", "body", "."]
        assert output.results() == []
        mock_rspamd_post.assert_called_once()
        sent = mock_rspamd_post.call_args.kwargs["headers"]
        assert sent == encode_headers(HEADERS)

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_dispatch_copies_headers(self, dispatcher, mock_rspamd_post):
        """
        Changing the caller's dict after dispatch does not change what is
        sent to rspamd.
        """
        headers = dict(HEADERS)
        verdict = dispatcher.dispatch(headers, "tok", "abc", MESSAGE)
        headers.clear()
        await verdict
        sent = mock_rspamd_post.call_args.kwargs["headers"]
        assert sent == encode_headers(HEADERS)

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_dispatch_reject(
        self, dispatcher, output, mock_rspamd_post, rspamd_response
    ):
        mock_rspamd_post.return_value = rspamd_response(action="reject")
        verdict = dispatcher.dispatch(HEADERS, "tok", "abc", MESSAGE)
        assert await verdict == "550 message rejected"
        assert output.datalines("abc")[-1] == "."

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_smtputf8_sender(
        self, dispatcher, output, mock_rspamd_post, rspamd_response
    ):
        """
        Given an SMTPUTF8 sender that latin-1 can not represent
        When a scan is dispatched
        Then the message is scanned and accepted instead of tempfailed
        """

        def post(url, headers, data, timeout):
            # http.client encodes str header values as latin-1.
            for value in headers.values():
                if isinstance(value, str):
                    value.encode("latin-1")
            return rspamd_response()

        mock_rspamd_post.side_effect = post
        headers = dict(HEADERS, From="用户@例子.cn")

        verdict = dispatcher.dispatch(headers, "tok", "abc", MESSAGE)

        assert await verdict == ""
        assert output.datalines("abc") == ["Subject: hi", "", "body", "."]

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_rspamd_unreachable(self, dispatcher, output, mock_rspamd_post):
        """
        Given rspamd refusing connections
        When a scan is dispatched
        Then the verdict is a temporary failure and nothing is written
        """
        mock_rspamd_post.side_effect = requests.ConnectionError("refused")

        verdict = dispatcher.dispatch(HEADERS, "tok", "abc", MESSAGE)

        assert await verdict == TEMPFAIL_REASON
        assert output.lines == []
        mock_rspamd_post.assert_called_once()

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_malformed_message(self, dispatcher, output, mock_rspamd_post):
        """
        Given a message with no header/body separator
        When a scan is dispatched
        Then the verdict is a temporary failure and nothing is written
        """
        verdict = dispatcher.dispatch(HEADERS, "tok", "abc", "no separator\n")
        assert await verdict == TEMPFAIL_REASON
        assert output.lines == []

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_unexpected_error(self, dispatcher, mocker, mock_rspamd_post):
        """
        Given a bug somewhere in the scan
        When a scan is dispatched
        Then the error does not escape the task and the verdict is a
             temporary failure
        """
        mocker.patch(
            "rspamd_filter.scan.reconstruct", side_effect=RuntimeError("bug")
        )
        verdict = dispatcher.dispatch(HEADERS, "tok", "abc", MESSAGE)
        assert await verdict == TEMPFAIL_REASON
        await dispatcher.drain()
        assert dispatcher.tasks == set()

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_concurrent_sessions(
        self, rspamd_client, output, mock_rspamd_post
    ):
        """
        Given several sessions scanning at once with a concurrency limit of 1
        When they are all dispatched
        Then every one gets its own verdict and message
        """
        dispatcher = ScanDispatcher(rspamd_client, output, max_concurrent=1)
        verdicts = [
            dispatcher.dispatch(HEADERS, f"tok{i}", f"s{i}", MESSAGE)
            for i in range(3)
        ]
        assert await asyncio.gather(*verdicts) == ["", "", ""]
        for i in range(3):
            assert output.datalines(f"s{i}") == ["Subject: hi", "", "body", "."]
        assert mock_rspamd_post.call_count == 3

    ####################################################################
    #
    @pytest.mark.asyncio
    async def test_drain(self, dispatcher, mock_rspamd_post):
        verdict = dispatcher.dispatch(HEADERS, "tok", "abc", MESSAGE)
        await dispatcher.drain()
        assert verdict.done()
        assert dispatcher.tasks == set()
