"""Hourly reservation grid.

A slot is one hour of one hall on one date. The grid runs from the opening
hour to the closing hour, both inclusive, so 10..22 yields 13 slots.
"""
from dataclasses import dataclass
from typing import List

from .errors import InvalidRequest


@dataclass(frozen=True)
class OperatingHours:
    open_hour: int = 10
    close_hour: int = 22

    def hours(self) -> List[int]:
        return list(range(self.open_hour, self.close_hour + 1))

    def labels(self) -> List[str]:
        return [self.label(hour) for hour in self.hours()]

    @staticmethod
    def label(hour: int) -> str:
        return f"{hour:02d}:00"

    def parse_hour(self, value) -> int:
        """Turn ``"13:00"``, ``"13"`` or ``13`` into an hour on the grid."""
        if isinstance(value, bool):
            raise InvalidRequest("invalid time")
        if isinstance(value, int):
            hour = value
        else:
            text = str(value).strip()
            head = text.split(":", 1)[0]
            try:
                hour = int(head)
            except ValueError:
                raise InvalidRequest("invalid time")

        if hour < self.open_hour or hour > self.close_hour:
            raise InvalidRequest("invalid time")
        return hour

    @staticmethod
    def span(start_hour: int, duration: int) -> List[int]:
        # Shared by the slot check and the reservation so both see the same hours
        return [start_hour + offset for offset in range(duration)]

    def fits(self, start_hour: int, duration: int) -> bool:
        return start_hour + duration - 1 <= self.close_hour


def parse_duration(value, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise InvalidRequest("invalid duration")
    try:
        duration = int(value)
    except (TypeError, ValueError):
        raise InvalidRequest("invalid duration")
    if duration < 1:
        raise InvalidRequest("duration must be at least 1 hour")
    return duration
