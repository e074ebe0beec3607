"""Shared fixtures: a small household roster."""

import pytest

from voicetask.models import Adult, Child, HouseholdRoster


@pytest.fixture
def roster():
    return HouseholdRoster(
        household_id="hh_1",
        children=[
            Child(id="child_marie", name="Marie", nicknames=["Mimi"], age=7),
            Child(id="child_lucas", name="Lucas", nicknames=["Lulu", "Lou"], age=4),
        ],
        adults=[
            Adult(id="adult_sophie", name="Sophie", current_load=30.0, capacity=100.0),
            Adult(id="adult_thomas", name="Thomas", current_load=10.0, capacity=100.0),
        ],
    )


@pytest.fixture
def empty_roster():
    return HouseholdRoster(household_id="hh_1")
