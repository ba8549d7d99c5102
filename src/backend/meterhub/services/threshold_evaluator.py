"""Threshold evaluation for meter readings.

Compares one reading against a device's configured limits and produces alarm
drafts graded by how far the measurement is past the limit. Persisting the
drafts is the caller's job.
"""

import math
from dataclasses import dataclass
from typing import Protocol

from meterhub.models.alarm import AlarmType, SeverityCode

EMERGENCY_PERCENT = 20.0
CRITICAL_PERCENT = 10.0


class ReadingLike(Protocol):
    max_avg_voltage: float
    min_avg_voltage: float
    max_avg_current: float


@dataclass(frozen=True)
class Thresholds:
    """Operator-configured safe limits for one device."""

    min_voltage: float
    max_voltage: float
    max_current: float

    @classmethod
    def from_device(cls, device) -> "Thresholds":
        return cls(
            min_voltage=device.min_voltage,
            max_voltage=device.max_voltage,
            max_current=device.max_current,
        )


@dataclass(frozen=True)
class AlarmDraft:
    """An alarm waiting to be persisted."""

    alarm_type: AlarmType
    severity: SeverityCode
    message: str
    value: float
    threshold: float


def percent_deviation(value: float, threshold: float) -> float:
    """Distance from the limit as a percentage of the limit."""
    if threshold == 0:
        return math.inf
    return 100.0 * abs(value - threshold) / abs(threshold)


def grade_severity(value: float, threshold: float) -> SeverityCode:
    """Map percent deviation to WARNING / CRITICAL / EMERGENCY."""
    percent = percent_deviation(value, threshold)
    if percent >= EMERGENCY_PERCENT:
        return SeverityCode.EMERGENCY
    if percent >= CRITICAL_PERCENT:
        return SeverityCode.CRITICAL
    return SeverityCode.WARNING


def _limit(value: float) -> str:
    return f"{value:g}"


def evaluate_thresholds(reading: ReadingLike, thresholds: Thresholds) -> list[AlarmDraft]:
    """Evaluate one reading; each rule is independent, so 0-3 drafts come back.

    Order is fixed: over-voltage, under-voltage, over-current.
    """
    drafts: list[AlarmDraft] = []

    if reading.max_avg_voltage > thresholds.max_voltage:
        drafts.append(AlarmDraft(
            alarm_type=AlarmType.OVER_VOLTAGE,
            severity=grade_severity(reading.max_avg_voltage, thresholds.max_voltage),
            message=(
                f"Voltage exceeded maximum: {reading.max_avg_voltage:.1f}V "
                f"(limit: {_limit(thresholds.max_voltage)}V)"
            ),
            value=reading.max_avg_voltage,
            threshold=thresholds.max_voltage,
        ))

    # Zero means the device has not populated the field yet
    if 0 < reading.min_avg_voltage < thresholds.min_voltage:
        drafts.append(AlarmDraft(
            alarm_type=AlarmType.UNDER_VOLTAGE,
            severity=grade_severity(reading.min_avg_voltage, thresholds.min_voltage),
            message=(
                f"Voltage below minimum: {reading.min_avg_voltage:.1f}V "
                f"(limit: {_limit(thresholds.min_voltage)}V)"
            ),
            value=reading.min_avg_voltage,
            threshold=thresholds.min_voltage,
        ))

    if reading.max_avg_current > thresholds.max_current:
        drafts.append(AlarmDraft(
            alarm_type=AlarmType.OVER_CURRENT,
            severity=grade_severity(reading.max_avg_current, thresholds.max_current),
            message=(
                f"Current exceeded maximum: {reading.max_avg_current:.2f}A "
                f"(limit: {_limit(thresholds.max_current)}A)"
            ),
            value=reading.max_avg_current,
            threshold=thresholds.max_current,
        ))

    return drafts
