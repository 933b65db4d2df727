# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""aiosmtpd binding for the relay controller.

aiosmtpd owns the SMTP transport: it parses commands, enforces their order
and the maximum message size, and buffers the DATA payload. This module maps
its handler hooks onto :class:`~mail_relay.controller.RelayController`:

- ``handle_CONNECT`` (called by :class:`RelaySMTP` before the greeting)
- ``handle_MAIL``, ``handle_RCPT``, ``handle_RSET``, ``handle_DATA``
- ``handle_NO_RECIPIENTS`` (DATA after every recipient was refused)
- ``handle_DISCONNECT`` (called by :class:`RelaySMTP` when the connection closes)

Example:
    Serving on a local port::

        controller = RelayController(config)
        smtp = RelaySMTPController(
            RelayHandler(controller),
            hostname="127.0.0.1",
            port=2525,
            server_hostname="mx.example.com",
            data_size_limit=config.server.max_size,
        )
        smtp.start()
"""

from __future__ import annotations

import weakref

from aiosmtpd.controller import Controller
from aiosmtpd.smtp import SMTP, Envelope
from aiosmtpd.smtp import Session as SMTPSession

from . import __version__
from .controller import RelayController
from .logger import get_logger
from .session import Session

IDENT = f"genro-mail-relay {__version__}"

logger = get_logger("SMTP")


class RelaySMTP(SMTP):
    """SMTP protocol that runs the connection gate before greeting the client."""

    async def _handle_client(self):
        hook = getattr(self.event_handler, "handle_CONNECT", None)
        if hook is not None:
            status = await hook(self, self.session)
            if status is not None and not status.startswith("2"):
                logger.debug("Refusing connection from %s: %s", self.session.peer, status)
                try:
                    await self.push(status)
                except ConnectionError as exc:
                    logger.debug("Peer %s left before the refusal was sent: %s", self.session.peer, exc)
                if self.transport is not None:
                    self.transport.close()
                return
        await super()._handle_client()

    async def smtp_DATA(self, arg: str) -> None:
        # aiosmtpd answers 503 on its own when no recipient was accepted.
        hook = getattr(self.event_handler, "handle_NO_RECIPIENTS", None)
        if hook is not None and self.envelope.mail_from is not None and not self.envelope.rcpt_tos:
            status = await hook(self, self.session, self.envelope)
            await self.push(status)
            return
        await super().smtp_DATA(arg)

    def connection_lost(self, error):
        session = self.session
        super().connection_lost(error)
        hook = getattr(self.event_handler, "handle_DISCONNECT", None)
        if hook is not None and session is not None:
            hook(session)


class RelayHandler:
    """aiosmtpd handler delegating every decision to the controller."""

    def __init__(self, controller: RelayController):
        self.controller = controller
        self._sessions: weakref.WeakKeyDictionary[SMTPSession, Session] = weakref.WeakKeyDictionary()

    def relay_session(self, session: SMTPSession) -> Session:
        """Return the relay session bound to an aiosmtpd session."""
        relay = self._sessions.get(session)
        if relay is None:
            peer = session.peer
            address = peer[0] if isinstance(peer, tuple) else str(peer or "")
            relay = self.controller.open_session(address)
            self._sessions[session] = relay
        return relay

    def handle_DISCONNECT(self, session: SMTPSession) -> None:
        relay = self._sessions.pop(session, None)
        if relay is not None:
            self.controller.close_session(relay)

    async def handle_CONNECT(self, server: SMTP, session: SMTPSession) -> str:
        reply = await self.controller.connect(self.relay_session(session))
        return str(reply)

    async def handle_MAIL(
        self,
        server: SMTP,
        session: SMTPSession,
        envelope: Envelope,
        address: str,
        mail_options: list[str],
    ) -> str:
        reply = await self.controller.sender(self.relay_session(session), address)
        if reply.is_success:
            envelope.mail_from = address
            envelope.mail_options.extend(mail_options)
        return str(reply)

    async def handle_RCPT(
        self,
        server: SMTP,
        session: SMTPSession,
        envelope: Envelope,
        address: str,
        rcpt_options: list[str],
    ) -> str:
        reply = await self.controller.recipient(self.relay_session(session), address)
        if reply.is_success:
            envelope.rcpt_tos.append(address)
            envelope.rcpt_options.extend(rcpt_options)
        return str(reply)

    async def handle_RSET(self, server: SMTP, session: SMTPSession, envelope: Envelope) -> str:
        return str(await self.controller.reset(self.relay_session(session)))

    async def handle_NO_RECIPIENTS(self, server: SMTP, session: SMTPSession, envelope: Envelope) -> str:
        reply = await self.controller.no_recipients(self.relay_session(session))
        envelope.mail_from = None
        envelope.mail_options.clear()
        return str(reply)

    async def handle_DATA(self, server: SMTP, session: SMTPSession, envelope: Envelope) -> str:
        content = envelope.original_content
        if content is None:
            content = envelope.content or b""
        if isinstance(content, str):
            content = content.encode("utf-8", errors="surrogateescape")
        reply = await self.controller.data(self.relay_session(session), content)
        return str(reply)


class RelaySMTPController(Controller):
    """aiosmtpd controller building :class:`RelaySMTP` protocol instances."""

    def factory(self):
        kwargs = {"ident": IDENT, **self.SMTP_kwargs}
        return RelaySMTP(self.handler, **kwargs)
