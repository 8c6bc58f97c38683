"""Deterministic weighted A/B variant assignment."""

import hashlib
from typing import Sequence

from models.nodes import ABTestVariant
from .exceptions import ValidationError


def bucket(contact_email: str, node_id: str, modulus: int) -> int:
    """Stable bucket in [0, modulus) for a contact at a node."""
    digest = hashlib.sha256(f"{contact_email}:{node_id}".encode("utf-8")).hexdigest()
    return int(digest, 16) % modulus


def select(contact_email: str, node_id: str, variants: Sequence[ABTestVariant]) -> str:
    """Id of the variant assigned to a contact at an ab_test node."""
    return select_variant(contact_email, node_id, variants).id


def select_variant(contact_email: str, node_id: str, variants: Sequence[ABTestVariant]) -> ABTestVariant:
    """Pick a variant for a contact.

    The same (contact_email, node_id) always lands on the same variant, across
    processes and restarts. Weights are relative; they need not sum to 100.

    Raises:
        ValidationError: no variants or non-positive total weight
    """
    if not variants:
        raise ValidationError(f"ab_test node {node_id} has no variants")

    total = sum(v.weight for v in variants)
    if total <= 0:
        raise ValidationError(f"ab_test node {node_id} has non-positive total weight")

    h = bucket(contact_email, node_id, total)
    cumulative = 0
    for variant in variants:
        cumulative += variant.weight
        if h < cumulative:
            return variant

    # Unreachable while every weight is positive
    return variants[-1]
