# Custom time period class used for slot generation and availability reconciliation
from datetime import time


"""
Defined as a pair of time-of-day values on a single calendar date, treated as the half open range [begin, end).
"""
class Period:

    def __init__(self, begin_period: time, end_period: time):
        self.begin_period = begin_period
        self.end_period = end_period

    @property
    def begin_period(self) -> time:
        return self._begin_period

    @begin_period.setter
    def begin_period(self, begin_period: time):
        self._begin_period = begin_period

    @property
    def end_period(self) -> time:
        return self._end_period

    @end_period.setter
    def end_period(self, end_period: time):
        self._end_period = end_period

    def overlaps(self, other: "Period") -> bool:
        """
        True if the two ranges share any instant. Touching ranges (10:00-11:00 and 11:00-12:00) do not overlap.
        """
        return self.begin_period < other.end_period and other.begin_period < self.end_period

    def to_dict(self):
        return {"startTime": self.begin_period.strftime("%H:%M"), "endTime": self.end_period.strftime("%H:%M")}

    def __eq__(self, other):
        if not isinstance(other, Period):
            return NotImplemented
        return self.begin_period == other.begin_period and self.end_period == other.end_period

    def __hash__(self):
        return hash((self.begin_period, self.end_period))

    def __repr__(self):
        return f"Period({self.begin_period:%H:%M}-{self.end_period:%H:%M})"
