#########################################################################################
##
##                              OBSERVABLE PARAMETER DRIVER
##                             (utils/parameter_driver.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import warnings

import numpy as np

from ..errors import ConfigurationError


__all__ = ["ParameterObserver", "ParameterDriver"]


# OBSERVER ==============================================================================

class ParameterObserver:
    """Callback interface for :class:`ParameterDriver` changes.

    Every hook receives the previous value of the changed field and the driver
    itself. The default implementations do nothing, so observers only override
    what they care about.
    """

    def value_changed(self, previous_value: np.ndarray, driver: "ParameterDriver") -> None:
        pass

    def reference_date_changed(self, previous_reference_date, driver: "ParameterDriver") -> None:
        pass

    def name_changed(self, previous_name: str, driver: "ParameterDriver") -> None:
        pass

    def selection_changed(self, previous_selection: bool, driver: "ParameterDriver") -> None:
        pass


# DRIVER ================================================================================

class ParameterDriver:
    """Named, observable, boundable parameter that may be fixed or estimated.

    The value is a vector of dimension ``>= 1`` (scalar parameters have
    dimension 1). Every write notifies the registered observers, including
    writes that do not change the stored value.

    Parameters
    ----------
    name : str
        Parameter name. Estimators use it as the key linking aliased drivers.
    reference_value : float or array_like
        Reference value, also the initial value. Sets the dimension.
    scale : float or array_like
        Normalization scale, must be non-zero component-wise.
    min_value, max_value : float or array_like
        Bounds; written values are clipped into ``[min_value, max_value]``.

    Notes
    -----
    ``driver.value`` returns a copy, so in-place edits of the returned array
    never bypass notification. Write with ``driver.value = ...`` or
    :meth:`set_value`.

    Example
    -------
    .. code-block:: python

        mu = ParameterDriver("central attraction coefficient", 3.986004415e14, 2.0**32)
        mu.selected = True
        mu.value = 3.9860044e14
    """

    def __init__(
        self,
        name: str,
        reference_value,
        scale,
        min_value=-np.inf,
        max_value=np.inf,
    ):
        reference = np.atleast_1d(np.asarray(reference_value, dtype=float)).reshape(-1)
        if reference.size == 0:
            raise ConfigurationError(f"Parameter '{name}': empty reference value")

        dim = reference.size
        scale_arr = self._broadcast(name, "scale", scale, dim)
        lo = self._broadcast(name, "min_value", min_value, dim)
        hi = self._broadcast(name, "max_value", max_value, dim)

        if np.any(scale_arr == 0.0) or not np.all(np.isfinite(scale_arr)):
            raise ConfigurationError(
                f"Parameter '{name}': scale must be finite and non-zero, got {scale_arr}"
            )
        if np.any(lo > hi):
            raise ConfigurationError(
                f"Parameter '{name}': lower bound {lo} > upper bound {hi}"
            )
        if np.any(reference < lo) or np.any(reference > hi):
            warnings.warn(
                f"Parameter '{name}': reference value {reference} outside bounds "
                f"[{lo}, {hi}], it will be clipped",
                UserWarning,
                stacklevel=2,
            )

        self._name = str(name)
        self._reference_value = reference
        self._scale = scale_arr
        self._min_value = lo
        self._max_value = hi
        self._value = np.clip(reference, lo, hi)
        self._reference_date = None
        self._selected = False
        self._observers: list[ParameterObserver] = []


    @staticmethod
    def _broadcast(name, label, value, dim) -> np.ndarray:
        arr = np.atleast_1d(np.asarray(value, dtype=float)).reshape(-1)
        if arr.size == 1:
            return np.full(dim, arr[0])
        if arr.size != dim:
            raise ConfigurationError(
                f"Parameter '{name}': {label} has dimension {arr.size}, expected {dim}"
            )
        return arr.copy()


    # OBSERVERS -------------------------------------------------------------------------

    def add_observer(self, observer: ParameterObserver) -> None:
        """Register an observer, notified after every change."""
        self._observers.append(observer)


    def remove_observer(self, observer: ParameterObserver) -> None:
        """Unregister an observer (no-op if it was not registered)."""
        for i, obs in enumerate(self._observers):
            if obs is observer:
                del self._observers[i]
                return


    @property
    def observers(self) -> tuple[ParameterObserver, ...]:
        return tuple(self._observers)


    # READ-ONLY PROPERTIES --------------------------------------------------------------

    @property
    def dimension(self) -> int:
        return self._reference_value.size


    @property
    def reference_value(self) -> np.ndarray:
        return self._reference_value.copy()


    @property
    def scale(self) -> np.ndarray:
        return self._scale.copy()


    @property
    def min_value(self) -> np.ndarray:
        return self._min_value.copy()


    @property
    def max_value(self) -> np.ndarray:
        return self._max_value.copy()


    # MUTABLE STATE ---------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name


    @name.setter
    def name(self, new_name: str) -> None:
        self.set_name(new_name)


    def set_name(self, new_name: str) -> None:
        previous = self._name
        self._name = str(new_name)
        for observer in list(self._observers):
            observer.name_changed(previous, self)


    @property
    def value(self) -> np.ndarray:
        """Current value (copy)."""
        return self._value.copy()


    @value.setter
    def value(self, new_value) -> None:
        self.set_value(new_value)


    def set_value(self, new_value) -> None:
        """Set the value, clipped into bounds, and notify observers."""
        arr = np.atleast_1d(np.asarray(new_value, dtype=float)).reshape(-1)
        if arr.size != self.dimension:
            raise ConfigurationError(
                f"Parameter '{self._name}': value has dimension {arr.size}, "
                f"expected {self.dimension}"
            )
        previous = self._value
        self._value = np.clip(arr, self._min_value, self._max_value)
        for observer in list(self._observers):
            observer.value_changed(previous.copy(), self)


    @property
    def normalized_value(self) -> np.ndarray:
        """``(value - reference_value) / scale``."""
        return (self._value - self._reference_value) / self._scale


    @normalized_value.setter
    def normalized_value(self, normalized) -> None:
        arr = np.atleast_1d(np.asarray(normalized, dtype=float)).reshape(-1)
        self.set_value(self._reference_value + arr * self._scale)


    @property
    def reference_date(self):
        return self._reference_date


    @reference_date.setter
    def reference_date(self, new_date) -> None:
        self.set_reference_date(new_date)


    def set_reference_date(self, new_date) -> None:
        previous = self._reference_date
        self._reference_date = None if new_date is None else float(new_date)
        for observer in list(self._observers):
            observer.reference_date_changed(previous, self)


    @property
    def selected(self) -> bool:
        """True if the parameter is estimated, False if it is fixed."""
        return self._selected


    @selected.setter
    def selected(self, flag: bool) -> None:
        self.set_selected(flag)


    def set_selected(self, flag: bool) -> None:
        previous = self._selected
        self._selected = bool(flag)
        for observer in list(self._observers):
            observer.selection_changed(previous, self)


    def __repr__(self) -> str:
        value = self._value[0] if self.dimension == 1 else self._value
        return (
            f"{type(self).__name__}(name={self._name!r}, value={value}, "
            f"selected={self._selected})"
        )
