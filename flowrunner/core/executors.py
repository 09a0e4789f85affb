"""Node executors: one class per node kind.

Executors know nothing about the graph. Each receives the node, the run
input, the joined output of its live dependencies and the results recorded
so far, and always returns a NodeResult. Exceptions raised inside an executor
are contained and reported as a failed result.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from flowrunner.core.config import EngineSettings
from flowrunner.core.graph_schema import (
    AIAgentConfig,
    ConditionConfig,
    DelayConfig,
    EmailConfig,
    Node,
    NodeKind,
    NodeResult,
    NodeStatus,
    WebhookConfig,
)
from flowrunner.core.mailer import EmailSender, ResendEmailSender
from flowrunner.core.templating import interpolate
from flowrunner.providers import GenerateParams, ProviderError, ProviderRegistry

logger = logging.getLogger(__name__)

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
DEFAULT_TEMPLATE = "{{previous_output}}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExecutorServices:
    """External collaborators shared by all executors of a run.

    ``sleep`` is injectable so delay nodes can be exercised without waiting.
    """

    providers: ProviderRegistry = field(default_factory=ProviderRegistry)
    email_sender: EmailSender | None = None
    http_client: httpx.AsyncClient | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    settings: EngineSettings = field(default_factory=EngineSettings)

    def __post_init__(self):
        if self.email_sender is None:
            self.email_sender = ResendEmailSender(
                from_address=self.settings.email_from,
                client=self.http_client,
            )


class NodeExecutor:
    """Base executor: stamps timestamps and contains failures."""

    def __init__(self, services: ExecutorServices):
        self.services = services

    @property
    def settings(self) -> EngineSettings:
        return self.services.settings

    async def execute(
        self,
        node: Node,
        input: str,
        previous_output: str,
        all_results: Mapping[str, NodeResult],
        environment_context: Mapping[str, Any] | None = None,
    ) -> NodeResult:
        started_at = utc_now()
        try:
            status, output, error, tokens = await self.run(
                node, input, previous_output, all_results, environment_context
            )
        except Exception as e:
            logger.warning(f"Node {node.id} raised {type(e).__name__}: {e}")
            status, output, error, tokens = NodeStatus.FAILED, None, str(e) or type(e).__name__, None
        return NodeResult(
            status=status,
            output=output,
            error=error,
            started_at=started_at,
            completed_at=utc_now(),
            tokens_used=tokens,
        )

    async def run(
        self,
        node: Node,
        input: str,
        previous_output: str,
        all_results: Mapping[str, NodeResult],
        environment_context: Mapping[str, Any] | None,
    ) -> tuple[NodeStatus, Any, str | None, int | None]:
        """Return (status, output, error, tokens_used)."""
        raise NotImplementedError


class TriggerExecutor(NodeExecutor):
    async def run(self, node, input, previous_output, all_results, environment_context):
        return NodeStatus.COMPLETED, input, None, None


class OutputExecutor(NodeExecutor):
    async def run(self, node, input, previous_output, all_results, environment_context):
        return NodeStatus.COMPLETED, previous_output, None, None


class UnknownKindExecutor(NodeExecutor):
    """Unsupported node types pass data through and report as skipped."""

    async def run(self, node, input, previous_output, all_results, environment_context):
        logger.debug(f"Node {node.id} has unsupported type '{node.type}', skipping")
        return NodeStatus.SKIPPED, previous_output, None, None


def _joined(values: Any) -> str | None:
    if isinstance(values, (list, tuple)):
        return ", ".join(str(v) for v in values) if values else None
    return str(values) if values else None


def build_client_prompt(environment_context: Mapping[str, Any] | None) -> str:
    """System prompt describing the client the workflow runs for.

    Expects ``{"name": ..., "settings": {...}}``; returns an empty string when
    either part is missing.
    """
    if not environment_context:
        return ""
    name = environment_context.get("name")
    settings = environment_context.get("settings")
    if not name or not isinstance(settings, Mapping):
        return ""

    parts = [f"Je werkt voor klant: {name}"]
    labelled = [
        ("proposition", "Propositie"),
        ("targetAudience", "Doelgroep"),
        ("usps", "USP's"),
        ("toneOfVoice", "Tone of Voice"),
        ("brandVoice", "Brand Voice"),
        ("bestsellers", "Bestsellers"),
        ("seasonality", "Seizoensgebonden"),
    ]
    for key, label in labelled:
        value = _joined(settings.get(key))
        if value:
            parts.append(f"{label}: {value}")

    # Compliance rules
    do_nots = _joined(settings.get("doNots"))
    if do_nots:
        parts.append(f"\n⚠️ VERBODEN (gebruik NOOIT): {do_nots}")
    must_haves = _joined(settings.get("mustHaves"))
    if must_haves:
        parts.append(f"✓ VERPLICHT (altijd toevoegen): {must_haves}")

    return "CLIENT CONTEXT:\n" + "\n".join(parts)


class AIAgentExecutor(NodeExecutor):
    """Generate text with the configured model.

    Unknown models and providers without credentials fail before any
    network call.
    """

    async def run(self, node, input, previous_output, all_results, environment_context):
        config: AIAgentConfig = node.config_as(AIAgentConfig)
        registry = self.services.providers
        model_id = config.model or self.settings.default_model

        model = registry.resolve_model(model_id)
        if model is None:
            return NodeStatus.FAILED, None, f"Onbekend model: {model_id}", None
        if not registry.is_provider_available(model.provider):
            return (
                NodeStatus.FAILED,
                None,
                f"Provider {model.provider} is niet geconfigureerd. Controleer de API key.",
                None,
            )

        # Explicit 0 is a valid temperature, so only None falls through
        temperature = next(
            (
                t
                for t in (config.temperature, model.default_temperature)
                if t is not None
            ),
            self.settings.default_temperature,
        )
        params = GenerateParams(
            model=model.model_name,
            user_prompt=interpolate(config.prompt or "", input, previous_output, all_results),
            system_prompt=build_client_prompt(environment_context),
            max_tokens=config.max_tokens or model.max_tokens or self.settings.default_max_tokens,
            temperature=temperature,
        )
        try:
            response = await registry.generate_text(model.provider, params)
        except ProviderError as e:
            logger.warning(f"Node {node.id}: {model.provider} generation failed: {e}")
            return NodeStatus.FAILED, None, str(e), None

        return NodeStatus.COMPLETED, response.content, None, response.total_tokens


class ConditionExecutor(NodeExecutor):
    """Test the previous output; never fails.

    Modes: contains, equals, not_equals (both trimmed), regex. Comparisons
    are case-insensitive unless ``caseSensitive`` is set. An invalid regex
    evaluates to False.
    """

    async def run(self, node, input, previous_output, all_results, environment_context):
        config: ConditionConfig = node.config_as(ConditionConfig)
        mode = config.mode or "contains"
        expected = config.condition or ""

        text, value = previous_output, expected
        if not config.case_sensitive:
            text, value = text.lower(), value.lower()

        result = False
        matched: str | None = None
        if mode == "contains":
            result = value in text
            matched = expected if result else None
        elif mode == "equals":
            result = text.strip() == value.strip()
            matched = expected if result else None
        elif mode == "not_equals":
            result = text.strip() != value.strip()
        elif mode == "regex":
            flags = 0 if config.case_sensitive else re.IGNORECASE
            try:
                match = re.search(expected, previous_output, flags)
            except re.error as e:
                logger.debug(f"Node {node.id}: invalid regex {expected!r} ({e}), treating as no match")
                match = None
            result = match is not None
            matched = match.group(0) if match else None
        else:
            logger.warning(f"Node {node.id}: unknown condition mode '{mode}', evaluating to false")

        output: dict[str, Any] = {"result": result}
        if matched is not None:
            output["matchedValue"] = matched
        output.update(
            mode=mode,
            checkedValue=expected,
            previousOutput=previous_output[: self.settings.condition_preview_chars],
        )
        return NodeStatus.COMPLETED, output, None, None


class WebhookExecutor(NodeExecutor):
    """Call an external URL and report its response."""

    async def run(self, node, input, previous_output, all_results, environment_context):
        config: WebhookConfig = node.config_as(WebhookConfig)
        if not config.url:
            return NodeStatus.FAILED, None, "Webhook URL is niet geconfigureerd", None

        method = (config.method or "POST").upper()
        headers = {"Content-Type": "application/json", **(config.headers or {})}
        body = None
        if method in BODY_METHODS:
            body = interpolate(
                config.body_template or DEFAULT_TEMPLATE, input, previous_output, all_results
            )

        try:
            response = await self._send(method, config.url, headers, body)
        except httpx.HTTPError as e:
            logger.warning(f"Node {node.id}: webhook {method} {config.url} failed: {e}")
            return (
                NodeStatus.FAILED,
                None,
                f"Webhook request mislukt: {str(e) or type(e).__name__}",
                None,
            )

        output = {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "body": self._decode_body(response),
        }
        if response.is_success:
            return NodeStatus.COMPLETED, output, None, None
        error = f"HTTP {response.status_code}: {response.reason_phrase}"
        logger.warning(f"Node {node.id}: webhook returned {error}")
        return NodeStatus.FAILED, output, error, None

    async def _send(
        self, method: str, url: str, headers: dict[str, str], body: str | None
    ) -> httpx.Response:
        client = self.services.http_client
        if client is not None:
            return await client.request(method, url, headers=headers, content=body)
        async with httpx.AsyncClient(timeout=self.settings.webhook_timeout_seconds) as client:
            return await client.request(method, url, headers=headers, content=body)

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if "application/json" in response.headers.get("content-type", ""):
            try:
                return response.json()
            except json.JSONDecodeError:
                return response.text
        return response.text


class DelayExecutor(NodeExecutor):
    """Pause, then pass the previous output through.

    The duration is read as seconds and capped at ``delay_cap_seconds``.
    """

    async def run(self, node, input, previous_output, all_results, environment_context):
        config: DelayConfig = node.config_as(DelayConfig)
        seconds = config.duration or self.settings.default_delay_seconds
        seconds = max(0.0, min(seconds, self.settings.delay_cap_seconds))
        logger.debug(f"Node {node.id}: sleeping {seconds}s")
        await self.services.sleep(seconds)
        return NodeStatus.COMPLETED, previous_output, None, None


class EmailExecutor(NodeExecutor):
    async def run(self, node, input, previous_output, all_results, environment_context):
        config: EmailConfig = node.config_as(EmailConfig)
        if not config.to:
            return NodeStatus.FAILED, None, "Geen ontvanger geconfigureerd", None

        subject = interpolate(
            config.subject or self.settings.email_subject,
            input,
            previous_output,
            all_results,
            legacy_node_tokens=True,
        )
        content = interpolate(
            config.template or DEFAULT_TEMPLATE,
            input,
            previous_output,
            all_results,
            legacy_node_tokens=True,
        )

        sent = await self.services.email_sender.send(config.to, subject, content)
        if not sent.success:
            logger.warning(f"Node {node.id}: email to {config.to} failed: {sent.error}")
            return NodeStatus.FAILED, None, sent.error or "Email verzenden mislukt", None
        return (
            NodeStatus.COMPLETED,
            f"Email verzonden naar {config.to} (ID: {sent.message_id})",
            None,
            None,
        )


def executor_for(node: Node, services: ExecutorServices) -> NodeExecutor:
    """Select the executor for a node's kind; unknown kinds get a skipping executor."""
    match node.kind:
        case NodeKind.TRIGGER:
            return TriggerExecutor(services)
        case NodeKind.AI_AGENT:
            return AIAgentExecutor(services)
        case NodeKind.CONDITION:
            return ConditionExecutor(services)
        case NodeKind.WEBHOOK:
            return WebhookExecutor(services)
        case NodeKind.DELAY:
            return DelayExecutor(services)
        case NodeKind.EMAIL:
            return EmailExecutor(services)
        case NodeKind.OUTPUT:
            return OutputExecutor(services)
        case _:
            return UnknownKindExecutor(services)
