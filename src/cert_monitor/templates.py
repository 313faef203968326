"""
Template engine for notification bodies.

Templates use ``{{.Name}}`` placeholders (inner whitespace allowed). Unknown
placeholders render as empty text so operators can reference variables that
a later release introduces; malformed templates (unbalanced or nested
delimiters, anything but a ``.Name`` inside them) are rejected when the
settings are saved, never when a message is sent.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping, Optional, Union

from .enums import ChannelKind, EventKind
from .exceptions import TemplateError
from .models import NotificationEvent, NotificationSettings


OPEN = "{{"
CLOSE = "}}"
ACTION_PATTERN = re.compile(r"^\s*\.([A-Za-z_][A-Za-z0-9_]*)\s*$")


DEFAULT_TEMPLATES: dict[EventKind, str] = {
    EventKind.STATUS_ALERT: (
        "[CertMonitor] {{.Domain}}: {{.OldStatus}} -> {{.NewStatus}}\n"
        "Days remaining: {{.DaysRemaining}} (expires {{.ExpiryDate}})\n"
        "Issuer: {{.Issuer}}\n"
        "{{.Details}}\n"
        "Time: {{.Time}}"
    ),
    EventKind.DOMAIN_ADDED: (
        "[CertMonitor] Now monitoring {{.Domain}} (zone {{.Zone}})\n"
        "Time: {{.Time}}"
    ),
    EventKind.DOMAIN_REMOVED: (
        "[CertMonitor] Stopped monitoring {{.Domain}}: no longer listed by the provider\n"
        "Last status: {{.Status}}\n"
        "Time: {{.Time}}"
    ),
    EventKind.RENEW_RESULT: (
        "[CertMonitor] Certificate renewal for {{.Domain}}: {{.Result}}\n"
        "{{.Details}}\n"
        "Time: {{.Time}}"
    ),
}


# Synthetic variables for "send test"
TEST_VARIABLES: dict[str, str] = {
    "Event": "test",
    "Domain": "example.com",
    "Zone": "example.com",
    "OldStatus": "active",
    "NewStatus": "warning",
    "Status": "warning",
    "DaysRemaining": "12",
    "ExpiryDate": "2030-01-01",
    "Issuer": "Example CA",
    "IP": "192.0.2.10",
    "TLSVersion": "TLS 1.3",
    "HTTPCode": "200",
    "Result": "success",
    "Details": "This is a test notification.",
    "Time": "2030-01-01 00:00:00 UTC",
}


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Placeholder:
    name: str


Part = Union[Literal, Placeholder]


class CompiledTemplate:
    """A parsed template; rendering is pure and deterministic."""

    def __init__(self, source: str, parts: tuple[Part, ...]) -> None:
        self.source = source
        self.parts = parts

    @property
    def placeholders(self) -> list[str]:
        return [part.name for part in self.parts if isinstance(part, Placeholder)]

    def render(self, variables: Mapping[str, Any]) -> str:
        out = []
        for part in self.parts:
            if isinstance(part, Literal):
                out.append(part.text)
            else:
                value = variables.get(part.name)
                out.append("" if value is None else str(value))
        return "".join(out)


def _malformed(template: str, position: int, reason: str) -> TemplateError:
    return TemplateError(
        code="malformed_template",
        message=f"Malformed template at position {position}: {reason}",
        details={"position": position, "reason": reason, "template": template},
    )


@lru_cache(maxsize=256)
def parse_template(template: str) -> CompiledTemplate:
    """
    Parse a template into literal and placeholder parts.

    Raises:
        TemplateError: On unbalanced/nested delimiters or an invalid action
    """
    parts: list[Part] = []
    pos = 0

    while True:
        open_idx = template.find(OPEN, pos)
        close_idx = template.find(CLOSE, pos)

        if open_idx == -1:
            if close_idx != -1:
                raise _malformed(template, close_idx, "'}}' without matching '{{'")
            if pos < len(template):
                parts.append(Literal(template[pos:]))
            break

        if close_idx != -1 and close_idx < open_idx:
            raise _malformed(template, close_idx, "'}}' without matching '{{'")

        if open_idx > pos:
            parts.append(Literal(template[pos:open_idx]))

        end = template.find(CLOSE, open_idx + len(OPEN))
        if end == -1:
            raise _malformed(template, open_idx, "'{{' is never closed")

        inner = template[open_idx + len(OPEN):end]
        if OPEN in inner:
            raise _malformed(template, open_idx, "nested '{{'")

        match = ACTION_PATTERN.match(inner)
        if match is None:
            raise _malformed(template, open_idx, f"invalid placeholder '{{{{{inner}}}}}'")

        parts.append(Placeholder(match.group(1)))
        pos = end + len(CLOSE)

    return CompiledTemplate(template, tuple(parts))


class TemplateEngine:
    """Validates and renders notification templates."""

    def __init__(self, defaults: Optional[dict[EventKind, str]] = None) -> None:
        self._defaults = dict(DEFAULT_TEMPLATES)
        if defaults:
            self._defaults.update(defaults)
        for template in self._defaults.values():
            parse_template(template)

    def validate(self, template: str) -> None:
        """Raise TemplateError if the template is malformed."""
        parse_template(template)

    def render(self, template: str, variables: Mapping[str, Any]) -> str:
        return parse_template(template).render(variables)

    def default_template(self, kind: EventKind) -> str:
        return self._defaults[kind]

    def validate_settings(self, settings: NotificationSettings) -> None:
        """
        Validate every template stored in the settings.

        Raises:
            TemplateError: With ``details["location"]`` naming the offending field
        """
        for location, template in settings.iter_templates():
            if not template:
                continue
            try:
                parse_template(template)
            except TemplateError as e:
                raise TemplateError(
                    code=e.code,
                    message=f"{location}: {e.message}",
                    details=dict(e.details, location=location),
                ) from e

    def resolve_template(
        self,
        settings: NotificationSettings,
        channel: ChannelKind,
        kind: EventKind,
    ) -> str:
        """Channel override, then the event-kind template, then the built-in default."""
        override = settings.channel(channel).template_for(kind)
        if override:
            return override
        shared = settings.event(kind).template
        if shared:
            return shared
        return self._defaults[kind]

    def render_event(
        self,
        settings: NotificationSettings,
        channel: ChannelKind,
        event: NotificationEvent,
    ) -> str:
        return self.render(self.resolve_template(settings, channel, event.kind), event.variables)
