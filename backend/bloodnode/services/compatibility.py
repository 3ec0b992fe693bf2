"""
ABO/Rh red-cell compatibility.

The matrix is fixed medical knowledge and is written out in full rather than
derived from antigen rules.
"""

from __future__ import annotations

from bloodnode.models.emergency import BloodType

A_POS, A_NEG = BloodType.A_POS, BloodType.A_NEG
B_POS, B_NEG = BloodType.B_POS, BloodType.B_NEG
AB_POS, AB_NEG = BloodType.AB_POS, BloodType.AB_NEG
O_POS, O_NEG = BloodType.O_POS, BloodType.O_NEG

# recipient -> donor types that may give to it
_CAN_RECEIVE_FROM: dict[BloodType, frozenset[BloodType]] = {
    A_POS: frozenset({A_POS, A_NEG, O_POS, O_NEG}),
    A_NEG: frozenset({A_NEG, O_NEG}),
    B_POS: frozenset({B_POS, B_NEG, O_POS, O_NEG}),
    B_NEG: frozenset({B_NEG, O_NEG}),
    AB_POS: frozenset({A_POS, A_NEG, B_POS, B_NEG, AB_POS, AB_NEG, O_POS, O_NEG}),
    AB_NEG: frozenset({A_NEG, B_NEG, AB_NEG, O_NEG}),
    O_POS: frozenset({O_POS, O_NEG}),
    O_NEG: frozenset({O_NEG}),
}

# donor -> recipient types it may give to
_CAN_DONATE_TO: dict[BloodType, frozenset[BloodType]] = {
    A_POS: frozenset({A_POS, AB_POS}),
    A_NEG: frozenset({A_POS, A_NEG, AB_POS, AB_NEG}),
    B_POS: frozenset({B_POS, AB_POS}),
    B_NEG: frozenset({B_POS, B_NEG, AB_POS, AB_NEG}),
    AB_POS: frozenset({AB_POS}),
    AB_NEG: frozenset({AB_POS, AB_NEG}),
    O_POS: frozenset({A_POS, B_POS, AB_POS, O_POS}),
    O_NEG: frozenset({A_POS, A_NEG, B_POS, B_NEG, AB_POS, AB_NEG, O_POS, O_NEG}),
}


def donors_for(recipient: BloodType | str) -> frozenset[BloodType]:
    """Blood types that can safely donate to *recipient*."""
    return _CAN_RECEIVE_FROM[BloodType(recipient)]


def recipients_for(donor: BloodType | str) -> frozenset[BloodType]:
    """Blood types that *donor* can safely donate to."""
    return _CAN_DONATE_TO[BloodType(donor)]


def can_donate(donor: BloodType | str, recipient: BloodType | str) -> bool:
    return BloodType(donor) in donors_for(recipient)
