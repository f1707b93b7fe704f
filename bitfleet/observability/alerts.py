"""Alerting: best-effort chat notifications.

Three severities, each routed to its own Slack channel when a bot token
is configured:
  info      -> slack_channel_info
  warning   -> slack_channel_warning
  critical  -> slack_channel_error

Webhook channels (Slack, Discord) receive every alert. With nothing
configured the post is only logged. A failing channel is logged and
never raises into the caller.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from bitfleet.config import AlertsConfig
from bitfleet.observability.logger import get_logger

log = get_logger(__name__)

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"

_LEVELS = {"info": 0, "warning": 1, "critical": 2}


@dataclass
class Alert:
    """An alert to be sent."""
    level: str  # "info" | "warning" | "critical"
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0
    channels_sent: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.timestamp == 0.0:
            self.timestamp = time.time()

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__

    @property
    def text(self) -> str:
        body = f"*{self.title}*\n{self.message}"
        if self.data:
            details = " ".join(f"{k}={v}" for k, v in self.data.items())
            body += f"\n`{details}`"
        return body


class AlertManager:
    """Send alerts through configured channels."""

    def __init__(self, config: AlertsConfig | None = None):
        self.alerts_config = config or AlertsConfig()
        self._history: list[Alert] = []
        self._cooldowns: dict[str, float] = {}
        self._http_session: Any | None = None  # Lazy aiohttp.ClientSession

    async def _get_session(self) -> Any:
        """Return a reusable aiohttp.ClientSession (created lazily)."""
        if self._http_session is None or self._http_session.closed:
            import aiohttp
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=10),
            )
        return self._http_session

    async def close(self) -> None:
        """Close the shared HTTP session."""
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
            self._http_session = None

    @property
    def history(self) -> list[Alert]:
        return list(self._history)

    def channel_for(self, level: str) -> str:
        cfg = self.alerts_config
        if level == "critical":
            return cfg.slack_channel_error
        if level == "warning":
            return cfg.slack_channel_warning
        return cfg.slack_channel_info

    async def send(
        self,
        level: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        cooldown_key: str | None = None,
        cooldown_secs: float | None = None,
    ) -> Alert:
        """Send an alert through all configured channels.

        Args:
            cooldown_key: If set, prevents duplicate alerts within cooldown_secs
        """
        if cooldown_key:
            window = self.alerts_config.cooldown_secs if cooldown_secs is None else cooldown_secs
            last_sent = self._cooldowns.get(cooldown_key, 0)
            if time.time() - last_sent < window:
                log.debug("alerts.cooldown", cooldown_key=cooldown_key)
                return Alert(level=level, title=title, message="[cooldown]")
            self._cooldowns[cooldown_key] = time.time()

        min_level = self.alerts_config.min_alert_level
        if _LEVELS.get(level, 0) < _LEVELS.get(min_level, 0):
            return Alert(level=level, title=title, message="[below min level]")

        alert = Alert(level=level, title=title, message=message, data=data or {})

        log_fn = log.info if level == "info" else (
            log.warning if level == "warning" else log.critical
        )
        log_fn("alert.sent", level=level, title=title, message=message[:200])
        alert.channels_sent.append("console")

        if not self.alerts_config.enabled:
            return alert

        cfg = self.alerts_config
        if cfg.slack_token:
            try:
                await self._send_slack_message(alert)
                alert.channels_sent.append("slack")
            except Exception as e:
                log.error("alert.slack_error", error=str(e))
        elif not (cfg.slack_webhook or cfg.discord_webhook):
            log.info("alert.simulated", channel=self.channel_for(level), title=title)

        if cfg.slack_webhook:
            try:
                await self._send_slack_webhook(alert)
                alert.channels_sent.append("slack_webhook")
            except Exception as e:
                log.error("alert.slack_webhook_error", error=str(e))

        if cfg.discord_webhook:
            try:
                await self._send_discord(alert)
                alert.channels_sent.append("discord")
            except Exception as e:
                log.error("alert.discord_error", error=str(e))

        self._history.append(alert)
        if len(self._history) > 500:
            self._history = self._history[-250:]

        return alert

    async def _send_slack_message(self, alert: Alert) -> None:
        """Post to the severity channel via the Slack Web API."""
        session = await self._get_session()
        async with session.post(
            SLACK_POST_MESSAGE_URL,
            headers={"Authorization": f"Bearer {self.alerts_config.slack_token}"},
            json={"channel": self.channel_for(alert.level), "text": alert.text},
        ) as resp:
            payload = await resp.json(content_type=None)
            if not payload.get("ok", False):
                raise RuntimeError(payload.get("error", "slack post failed"))

    async def _send_slack_webhook(self, alert: Alert) -> None:
        emoji = {
            "info": ":information_source:",
            "warning": ":warning:",
            "critical": ":rotating_light:",
        }.get(alert.level, ":bell:")
        session = await self._get_session()
        await session.post(
            self.alerts_config.slack_webhook,
            json={"text": f"{emoji} {alert.text}"},
        )

    async def _send_discord(self, alert: Alert) -> None:
        color = {
            "info": 0x3498DB,
            "warning": 0xF39C12,
            "critical": 0xE74C3C,
        }.get(alert.level, 0x95A5A6)

        payload = {
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": color,
                "timestamp": time.strftime(
                    "%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp)
                ),
            }]
        }

        session = await self._get_session()
        await session.post(self.alerts_config.discord_webhook, json=payload)

    # Convenience methods

    async def warning(
        self, title: str, message: str, cooldown_key: str | None = None, **data: Any,
    ) -> Alert:
        return await self.send("warning", title, message, data=data or None,
                               cooldown_key=cooldown_key or f"{title}:{message}")

    async def critical(
        self, title: str, message: str, cooldown_key: str | None = None, **data: Any,
    ) -> Alert:
        return await self.send("critical", title, message, data=data or None,
                               cooldown_key=cooldown_key)
