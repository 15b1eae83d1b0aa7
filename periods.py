import calendar
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Union


@dataclass(frozen=True, order=True)
class MonthKey:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Month must be between 1 and 12, got {self.month}")

    @property
    def ordinal(self) -> int:
        return self.year * 100 + self.month

    @property
    def label(self) -> str:
        return f"{self.year:04d}{self.month:02d}"

    @property
    def display(self) -> str:
        return f"{calendar.month_name[self.month]} {self.year}"

    def next(self) -> "MonthKey":
        if self.month == 12:
            return MonthKey(self.year + 1, 1)
        return MonthKey(self.year, self.month + 1)

    def prev(self) -> "MonthKey":
        if self.month == 1:
            return MonthKey(self.year - 1, 12)
        return MonthKey(self.year, self.month - 1)

    def shift(self, months: int) -> "MonthKey":
        total = self.year * 12 + (self.month - 1) + months
        return MonthKey(total // 12, total % 12 + 1)

    @classmethod
    def parse(cls, value: Union[int, str]) -> "MonthKey":
        text = str(value).strip()
        if len(text) != 6 or not text.isdigit():
            raise ValueError(f"Invalid month ordinal: {value!r}")
        return cls(int(text[:4]), int(text[4:]))

    @classmethod
    def from_date(cls, value: date) -> "MonthKey":
        return cls(value.year, value.month)


def sorted_labels(labels: Iterable[str]) -> list[str]:
    return sorted(labels, key=lambda v: MonthKey.parse(v).ordinal)


def bounds(labels: Iterable[str]) -> tuple[Optional[MonthKey], Optional[MonthKey]]:
    ordered = sorted_labels(labels)
    if not ordered:
        return None, None
    return MonthKey.parse(ordered[0]), MonthKey.parse(ordered[-1])
