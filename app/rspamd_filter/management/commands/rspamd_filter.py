#!/usr/bin/env python
#
"""
Run the OpenSMTPD rspamd filter.

smtpd starts this as a filter process: events arrive on stdin and our
responses go out on stdout. Configure it in smtpd.conf along the lines of:

    filter rspamd proc-exec "/path/to/manage.py rspamd_filter"
    listen on all filter rspamd

Every message is posted to rspamd. Depending on rspamd's verdict the message
gets spam headers added, its subject rewritten, or is rejected, greylisted
or deferred.
"""
# system imports
#
import asyncio
import logging
import sys

# 3rd party imports
#
import sentry_sdk
from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from sentry_sdk.integrations.asyncio import AsyncioIntegration

# Project imports
#
from rspamd_filter.filter import FilterHandler
from rspamd_filter.protocol import OutputStream, ProtocolError
from rspamd_filter.rspamd import RspamdClient
from rspamd_filter.scan import ScanDispatcher

# SMTP limits lines to 1000 octets but we do not want to fall over on a
# message that ignores that.
#
MAX_LINE_LENGTH = 1024 * 1024

logger = logging.getLogger("rspamd_filter.command")


########################################################################
#
async def open_stdin() -> asyncio.StreamReader:
    """
    Return an asyncio StreamReader reading from our stdin.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_LINE_LENGTH)
    await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
    )
    return reader


########################################################################
#
def init_sentry() -> None:
    if settings.SENTRY_DSN is None:
        return
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        profiles_sample_rate=settings.SENTRY_PROFILES_SAMPLE_RATE,
        integrations=[
            AsyncioIntegration(),
        ],
        environment="devel" if settings.DEBUG else "production",
    )


########################################################################
########################################################################
#
class Command(BaseCommand):
    help = (
        "Runs as an OpenSMTPD filter. Scores each message with rspamd and "
        "accepts, rejects or defers it according to rspamd's verdict."
    )

    ####################################################################
    #
    def add_arguments(self, parser):
        def positive_number(value):
            number = float(value)
            if number <= 0:
                raise ValueError(f"Must be greater than 0, got '{value}'")
            return number

        parser.add_argument(
            "--url",
            action="store",
            default=None,
            help="rspamd checkv2 url. Defaults to the RSPAMD_URL setting.",
        )
        parser.add_argument(
            "--timeout",
            type=positive_number,
            action="store",
            default=None,
            help=(
                "Seconds to wait for rspamd. Defaults to the RSPAMD_TIMEOUT "
                "setting."
            ),
        )
        parser.add_argument(
            "--max_concurrent",
            type=int,
            action="store",
            default=None,
            help="Maximum concurrent scans. Defaults to MAX_CONCURRENT_SCANS.",
        )

    ####################################################################
    #
    def handle(self, *args, **options):
        # smtpd hands us the message as is. 8-bit content that is not utf-8
        # has to make it back out unchanged.
        #
        if "stdout" not in options and hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(errors="surrogateescape")

        init_sentry()
        client = RspamdClient(url=options["url"], timeout=options["timeout"])
        logger.info(
            "rspamd_filter: rspamd: %s, timeout: %s",
            client.url,
            client.timeout,
        )

        try:
            asyncio.run(self.serve(client, options["max_concurrent"]))
        except ProtocolError as exc:
            logger.error("Lost sync with smtpd: %s", exc)
            raise CommandError(f"Protocol error: {exc}") from exc
        except KeyboardInterrupt:
            logger.warning("Keyboard interrupt, exiting")

    ####################################################################
    #
    async def serve(self, client: RspamdClient, max_concurrent=None) -> None:
        out = OutputStream(self.stdout)
        dispatcher = ScanDispatcher(client, out, max_concurrent=max_concurrent)
        handler = FilterHandler(out, dispatcher)
        handler.register()
        reader = await open_stdin()
        await handler.run(reader)
