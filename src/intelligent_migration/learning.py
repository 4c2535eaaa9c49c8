#!/usr/bin/env python3
"""
Confidence arithmetic for learned mappings.

Every repository implementation applies these functions inside its own
atomic upsert so that the rules hold regardless of storage:

- a new mapping starts at its observed success rate (0.5 with no
  observations), plus the acceptance boost when a person accepted it;
- an update moves confidence toward the outcome's success rate, weighted
  by the outcome's share of all observations so far;
- a failure-dominant outcome never raises confidence;
- a pure-success outcome always raises it until it reaches 1.0;
- an explicit correction subtracts a fixed penalty, floored at 0.0.
"""

DEFAULT_CONFIDENCE = 0.5
ACCEPTANCE_BOOST = 0.05
CORRECTION_PENALTY = 0.1
CORRECTED_TARGET_CONFIDENCE = 0.8


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def initial_confidence(
    successes: int, failures: int, accepted: bool, boost: float = ACCEPTANCE_BOOST
) -> float:
    attempts = successes + failures
    confidence = successes / attempts if attempts else DEFAULT_CONFIDENCE
    if accepted and successes >= failures:
        confidence += boost
    return clamp(confidence)


def updated_confidence(
    current: float,
    prior_successes: int,
    prior_failures: int,
    successes: int,
    failures: int,
    accepted: bool,
    boost: float = ACCEPTANCE_BOOST,
) -> float:
    """
    New confidence after observing ``successes``/``failures`` more records.

    Args:
        current: Stored confidence before this outcome
        prior_successes: Stored success count before this outcome
        prior_failures: Stored failure count before this outcome
        successes: Records that succeeded in this outcome
        failures: Records that failed in this outcome
        accepted: Whether a person accepted the mapping
        boost: Added when accepted and the outcome is not failure-dominant
    """
    attempts = successes + failures
    if attempts == 0:
        updated = current + boost if accepted else current
        return clamp(updated)

    rate = successes / attempts
    weight = attempts / (prior_successes + prior_failures + attempts)
    updated = current + weight * (rate - current)

    if failures > successes:
        return clamp(min(updated, current))

    if accepted:
        updated += boost
    if failures == 0:
        # Weight may round the step to nothing for long histories.
        updated = max(updated, current + (1.0 - current) * 0.01)
    return clamp(updated)


def penalized_confidence(current: float, penalty: float = CORRECTION_PENALTY) -> float:
    return clamp(current - penalty)


def corrected_target_confidence(current=None, step: float = CORRECTION_PENALTY) -> float:
    """Confidence for the target a person corrected a mapping to."""
    if current is None:
        return CORRECTED_TARGET_CONFIDENCE
    return clamp(current + step)
