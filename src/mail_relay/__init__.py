"""Inbound SMTP relay that forwards accepted mail to HTTP webhooks.

This package provides an SMTP front door for applications that ingest mail
over HTTP (Rails Action Mailbox and similar relay ingresses). Features include:

- Domain-pattern routing of recipients to delivery targets
- DNSBL reputation check at connection time
- SpamAssassin (spamd) scoring with ``X-Spam-*`` header augmentation
- One HTTP delivery per distinct target, all-or-nothing outcome
- Prometheus metrics and a FastAPI status endpoint

Example:
    Running the relay from Python::

        from mail_relay.config_loader import load_config
        from mail_relay.server import run

        config = load_config("/etc/mail-relay/config.ini")
        asyncio.run(run(config))

Authors:
    Softwell S.r.l.
"""

__version__ = "0.3.0"
