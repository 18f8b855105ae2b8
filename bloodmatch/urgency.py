"""
Per-urgency knobs: how far to search, how many donors to notify beyond the
units needed, and how long a notified donor has to respond.
"""

from dataclasses import dataclass

CASCADE_RADIUS_FACTOR = 1.5


@dataclass(frozen=True)
class UrgencyPolicy:
    radius_km: float
    notify_buffer: int
    expiry_hours: int
    required_within_hours: int

    @property
    def expanded_radius_km(self) -> float:
        return self.radius_km * CASCADE_RADIUS_FACTOR


# keyed by Urgency value
POLICIES: dict[str, UrgencyPolicy] = {
    "Critical": UrgencyPolicy(
        radius_km=15, notify_buffer=3, expiry_hours=6, required_within_hours=2
    ),
    "Urgent": UrgencyPolicy(
        radius_km=10, notify_buffer=2, expiry_hours=12, required_within_hours=6
    ),
    "Moderate": UrgencyPolicy(
        radius_km=5, notify_buffer=1, expiry_hours=24, required_within_hours=24
    ),
}

DEFAULT_POLICY = UrgencyPolicy(
    radius_km=10, notify_buffer=1, expiry_hours=24, required_within_hours=24
)


def policy_for(urgency: str | None) -> UrgencyPolicy:
    if urgency is None:
        return DEFAULT_POLICY
    return POLICIES.get(str(urgency), DEFAULT_POLICY)
