"""Email delivery for email nodes.

The engine only depends on the EmailSender protocol. ResendEmailSender is the
production implementation: it renders the workflow HTML layout with Jinja2
and posts it to the Resend API.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx
from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment
from markupsafe import Markup, escape

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent.parent / "templates"
RESEND_URL = "https://api.resend.com/emails"


@dataclass
class SendResult:
    """Outcome of one send attempt."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class EmailSender(Protocol):
    """Collaborator that delivers a rendered workflow email."""

    async def send(self, to: str, subject: str, content: str) -> SendResult: ...


def _nl2br(text: str) -> Markup:
    return Markup("<br>\n").join(escape(line) for line in str(text).split("\n"))


_jinja_env = SandboxedEnvironment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=True,
    undefined=StrictUndefined,
)
_jinja_env.filters["nl2br"] = _nl2br


def render_workflow_email(subject: str, content: str) -> str:
    """Wrap plain-text content in the workflow email layout."""
    template = _jinja_env.get_template("workflow_email.html.j2")
    return template.render(subject=subject, content=content)


class ResendEmailSender:
    """Send workflow emails through Resend.

    Without an API key every send fails fast with a "not configured" result;
    no request is made.
    """

    def __init__(
        self,
        api_key: str | None = None,
        from_address: str = "workflows@yourfellow.com",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key if api_key is not None else os.environ.get("RESEND_API_KEY")
        self.from_address = from_address
        self._client = client
        self._timeout = timeout

    async def send(self, to: str, subject: str, content: str) -> SendResult:
        if not self.api_key:
            logger.warning("RESEND_API_KEY not configured - email not sent")
            return SendResult(
                success=False,
                error="Email service not configured. Add RESEND_API_KEY to your environment.",
            )

        payload = {
            "from": self.from_address,
            "to": [addr.strip() for addr in to.split(",") if addr.strip()],
            "subject": subject,
            "html": render_workflow_email(subject, content),
            "text": content,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            if self._client is not None:
                response = await self._client.post(RESEND_URL, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(RESEND_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Email send failed: {e}")
            return SendResult(success=False, error=str(e) or type(e).__name__)

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            message = body.get("message") if isinstance(body, dict) else None
            logger.warning(f"Email send rejected ({response.status_code}): {message}")
            return SendResult(success=False, error=message or f"HTTP {response.status_code}")

        message_id = body.get("id") if isinstance(body, dict) else None
        logger.info(f"Email sent: {message_id}")
        return SendResult(success=True, message_id=message_id)
