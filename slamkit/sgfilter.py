"""Causal Savitzky-Golay filter over a sliding window of timed samples."""

from __future__ import annotations

import numpy as np

__all__ = ["SGFilter"]


class SGFilter:
    """Fits a polynomial to the last ``filter_size`` samples.

    After each update (once enough samples have been seen) the fitted value
    and its time derivative at the newest sample are available as ``y`` and
    ``y_dot``; ``y_raw`` holds the newest raw value.
    """

    def __init__(self, poly_order, filter_size):
        if poly_order + 1 > filter_size:
            raise ValueError(
                "SGFilter could not be initialized. "
                "Order should be smaller than number of filtered points"
            )
        self.poly_order = int(poly_order)
        self.filter_size = int(filter_size)
        self._current_line = 0
        self._filter_iter = 0
        self._a = np.zeros((self.filter_size, self.poly_order + 1))
        self._f = np.zeros(self.filter_size)
        self._t = np.zeros(self.filter_size)
        self.coefficients = np.zeros(self.poly_order + 1)
        self.y_raw = 0.0
        self.y = 0.0
        self.y_dot = 0.0

    def update(self, time, value):
        """Add a sample; return ``(y, y_dot)`` once the filter is primed, else None."""
        self._f[self._current_line] = value
        self._t[self._current_line] = time

        next_line = (self._current_line + 1) % self.filter_size
        t_center = 0.5 * (time + self._t[next_line])

        powers = np.arange(self.poly_order + 1)
        self._a = (self._t - t_center)[:, None] ** powers

        result = None
        if self._filter_iter > self.filter_size:
            self.coefficients = np.linalg.lstsq(self._a, self._f, rcond=None)[0]
            t_end = time - t_center
            self.y_raw = float(value)
            self.y = float(np.sum(self.coefficients * t_end ** powers))
            self.y_dot = float(
                sum(i * self.coefficients[i] * t_end ** (i - 1) for i in range(1, self.poly_order + 1))
            )
            result = (self.y, self.y_dot)

        self._filter_iter += 1
        self._current_line = next_line
        return result

    def design_matrix(self):
        """Return a copy of the current least-squares design matrix."""
        return self._a.copy()