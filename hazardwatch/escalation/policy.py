"""ChannelPolicy — severity/hazard type → channels and escalation policy."""

from __future__ import annotations

import structlog

from hazardwatch.core.config import ChannelPolicyConfig, get_settings
from hazardwatch.core.types import (
    Channel,
    Contact,
    EscalationPolicy,
    HazardType,
)
from hazardwatch.escalation.exceptions import ConfigurationError

logger = structlog.stdlib.get_logger()

SEVERITIES = range(1, 6)


def channels_for_contact(contact: Contact, channels: list[Channel]) -> list[Channel]:
    """Narrow *channels* to those the contact can be reached on and prefers.

    An empty preference list means every channel is acceptable.
    """
    return [
        ch for ch in channels
        if contact.address_for(ch)
        and (not contact.preferred_channels or ch in contact.preferred_channels)
    ]


class ChannelPolicy:
    """Configurable channel matrix plus escalation-policy selection.

    Both tables are validated on construction: every severity 1–5 of every
    non-excluded hazard type must map to a non-empty channel list and to an
    escalation policy with at least one step.

    Raises:
        ConfigurationError: on construction if either table has a gap.
    """

    def __init__(
        self,
        config: ChannelPolicyConfig | None = None,
        policies: list[EscalationPolicy] | None = None,
    ) -> None:
        settings = get_settings()
        self._config = config or settings.channel_policy
        self._policies = list(
            policies if policies is not None else settings.escalation.policies
        )
        self.validate()

    @property
    def policies(self) -> list[EscalationPolicy]:
        return [p.model_copy(deep=True) for p in self._policies]

    def get_policy(self, policy_id: str) -> EscalationPolicy | None:
        for policy in self._policies:
            if policy.id == policy_id:
                return policy
        return None

    def channels_for(self, severity: int, hazard_type: HazardType) -> list[Channel]:
        """Ordered, de-duplicated channel list for an event.

        Excluded hazard types get an empty list.
        """
        if hazard_type in self._config.excluded_hazard_types:
            return []
        override = self._config.overrides.get(hazard_type, {})
        channels = override.get(severity) or self._config.matrix.get(severity)
        if not channels:
            raise ConfigurationError(
                f"No channel mapping for severity {severity} ({hazard_type.value})"
            )
        return list(dict.fromkeys(channels))

    def policy_for(self, severity: int, hazard_type: HazardType) -> EscalationPolicy:
        """First configured escalation policy covering the event."""
        for policy in self._policies:
            if policy.steps and policy.applies_to(severity, hazard_type):
                return policy
        raise ConfigurationError(
            f"No escalation policy for severity {severity} ({hazard_type.value})"
        )

    def validate(self) -> None:
        """Prove both tables are total over severity × hazard type."""
        ids = [p.id for p in self._policies]
        if len(ids) != len(set(ids)):
            raise ConfigurationError(f"Duplicate escalation policy ids: {ids}")
        for policy in self._policies:
            if not policy.steps:
                raise ConfigurationError(f"Escalation policy {policy.id} has no steps")
            if policy.min_severity > policy.max_severity:
                raise ConfigurationError(
                    f"Escalation policy {policy.id} has an empty severity range"
                )

        for hazard_type in HazardType:
            if hazard_type in self._config.excluded_hazard_types:
                continue
            previous: set[Channel] = set()
            for severity in SEVERITIES:
                channels = set(self.channels_for(severity, hazard_type))
                self.policy_for(severity, hazard_type)
                if not previous <= channels:
                    logger.warning(
                        "channel_policy_not_monotonic",
                        hazard_type=hazard_type,
                        severity=severity,
                        dropped=sorted(previous - channels),
                    )
                previous = channels
