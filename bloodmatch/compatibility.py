"""
Blood-group compatibility and donor-side eligibility gating.
"""

from datetime import datetime, timedelta

from bloodmatch.models import BloodGroup, Donor, Gender

# recipient group -> donor groups that may give to it
COMPATIBLE_DONORS: dict[BloodGroup, frozenset[BloodGroup]] = {
    BloodGroup.O_NEG: frozenset({BloodGroup.O_NEG}),
    BloodGroup.O_POS: frozenset({BloodGroup.O_POS, BloodGroup.O_NEG}),
    BloodGroup.A_NEG: frozenset({BloodGroup.A_NEG, BloodGroup.O_NEG}),
    BloodGroup.A_POS: frozenset(
        {BloodGroup.A_POS, BloodGroup.A_NEG, BloodGroup.O_POS, BloodGroup.O_NEG}
    ),
    BloodGroup.B_NEG: frozenset({BloodGroup.B_NEG, BloodGroup.O_NEG}),
    BloodGroup.B_POS: frozenset(
        {BloodGroup.B_POS, BloodGroup.B_NEG, BloodGroup.O_POS, BloodGroup.O_NEG}
    ),
    BloodGroup.AB_NEG: frozenset(
        {BloodGroup.AB_NEG, BloodGroup.A_NEG, BloodGroup.B_NEG, BloodGroup.O_NEG}
    ),
    BloodGroup.AB_POS: frozenset(BloodGroup),
}

COOLDOWN_DAYS: dict[Gender, int] = {
    Gender.MALE: 90,
    Gender.FEMALE: 120,
    Gender.OTHER: 120,
}


def compatible_donor_groups(recipient: BloodGroup) -> frozenset[BloodGroup]:
    return COMPATIBLE_DONORS.get(recipient, frozenset())


def is_compatible(donor_group: BloodGroup, recipient: BloodGroup) -> bool:
    return donor_group in compatible_donor_groups(recipient)


def cooldown_for(gender: Gender) -> timedelta:
    return timedelta(days=COOLDOWN_DAYS.get(gender, max(COOLDOWN_DAYS.values())))


def cooldown_elapsed(donor: Donor, now: datetime) -> bool:
    """Donors who never donated are always past their cooldown."""
    if donor.last_donation_date is None:
        return True
    return now - donor.last_donation_date >= cooldown_for(donor.gender)


def is_eligible(donor: Donor, recipient: BloodGroup, now: datetime) -> bool:
    return (
        is_compatible(donor.blood_group, recipient)
        and donor.is_available
        and cooldown_elapsed(donor, now)
    )
