#########################################################################################
##
##                         LINKED PARAMETER DRIVERS COLLECTION
##                          (utils/parameter_drivers_list.py)
##
##          Groups independently created drivers sharing one parameter name
##          behind a single delegating driver that keeps all of them in sync.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from typing import Callable, Iterator

import numpy as np

from .parameter_driver import ParameterDriver, ParameterObserver
from ..errors import ConfigurationError


__all__ = ["ParameterDriversList", "DelegatingDriver"]


# LIST ==================================================================================

class ParameterDriversList:
    """Ordered collection of :class:`DelegatingDriver`, one per parameter name.

    Adding a driver whose name is already managed links it to the existing
    group instead of creating a new entry. Names are the only aggregation key:
    two drivers that share a name are assumed to represent the same physical
    quantity.

    Example
    -------
    .. code-block:: python

        drivers = ParameterDriversList()
        drivers.add(station_a_range.get_parameters_drivers()[0])
        drivers.add(station_a_doppler.get_parameters_drivers()[0])  # same name: linked
        drivers.sort()
        drivers.filter(True)  # keep estimated parameters only
    """

    def __init__(self, drivers=None):
        self._delegating: list[DelegatingDriver] = []
        for driver in drivers or []:
            self.add(driver)


    def add(self, driver: ParameterDriver) -> None:
        """Add a driver, linking it to any existing group with the same name.

        Adding a driver that is already a member of its group is a no-op.
        A :class:`DelegatingDriver` is unwrapped and each of its raw drivers
        is added in turn.
        """
        if isinstance(driver, DelegatingDriver):
            for raw in driver.raw_drivers:
                self.add(raw)
            return

        for delegating in self._delegating:
            if delegating.name == driver.name:
                if any(existing is driver for existing in delegating.raw_drivers):
                    return
                delegating._add(driver)
                return

        self._delegating.append(DelegatingDriver(driver))


    def sort(self) -> None:
        """Sort groups lexicographically by name."""
        self._delegating.sort(key=lambda d: d.name)


    def filter(self, selected: bool) -> None:
        """Remove every group whose selection status differs from *selected*."""
        self._delegating = [d for d in self._delegating if d.selected == bool(selected)]


    def get_nb_params(self) -> int:
        """Number of distinct parameter names."""
        return len(self._delegating)


    def get_drivers(self) -> tuple[DelegatingDriver, ...]:
        """Read-only ordered view of the delegating drivers."""
        return tuple(self._delegating)


    def find_by_name(self, name: str) -> DelegatingDriver | None:
        """Return the group managing *name*, or ``None``."""
        for delegating in self._delegating:
            if delegating.name == name:
                return delegating
        return None


    def selected_drivers(self) -> list[DelegatingDriver]:
        """Groups currently selected for estimation, in list order."""
        return [d for d in self._delegating if d.selected]


    def __len__(self) -> int:
        return len(self._delegating)


    def __iter__(self) -> Iterator[DelegatingDriver]:
        return iter(tuple(self._delegating))


    def __repr__(self) -> str:
        return f"ParameterDriversList({[d.name for d in self._delegating]})"


# DELEGATING DRIVER =====================================================================

class DelegatingDriver(ParameterDriver):
    """Canonical representative of a group of drivers sharing one name.

    All raw drivers of the group and the delegating driver itself hold the
    same value, reference date and selection status at all times: a change
    made on any one of them is forwarded to all the others.

    Parameters
    ----------
    driver : ParameterDriver
        First driver of the group; provides name, reference value, scale,
        bounds and the initial state.
    """

    def __init__(self, driver: ParameterDriver):
        super().__init__(
            driver.name,
            driver.reference_value,
            driver.scale,
            driver.min_value,
            driver.max_value,
        )
        self._drivers: list[ParameterDriver] = [driver]

        self.set_value(driver.value)
        self.set_reference_date(driver.reference_date)
        self.set_selected(driver.selected)

        # installed last: the initial copy above must not write back into driver
        self._forwarder = _ChangesForwarder(self)
        self.add_observer(self._forwarder)
        driver.add_observer(self._forwarder)


    def _add(self, driver: ParameterDriver) -> None:
        """Append a new alias; the latest driver wins for value and date."""
        if driver.dimension != self.dimension:
            raise ConfigurationError(
                f"Parameter '{self.name}': cannot link drivers of dimensions "
                f"{self.dimension} and {driver.dimension}"
            )

        self.set_value(driver.value)
        self.set_reference_date(driver.reference_date)

        # if any of the drivers is selected, all must be selected
        if self.selected:
            driver.set_selected(True)
        else:
            self.set_selected(driver.selected)

        driver.add_observer(self._forwarder)
        self._drivers.append(driver)


    @property
    def raw_drivers(self) -> tuple[ParameterDriver, ...]:
        """The underlying drivers this one delegates to."""
        return tuple(self._drivers)


# FORWARDER =============================================================================

class _ChangesForwarder(ParameterObserver):
    """Propagates changes between all drivers of one group without looping.

    The first notification of an update chain records its originating driver
    as the chain root. A change on the delegating driver is pushed down to
    every raw driver except the root; a change on a raw driver is pushed up to
    the delegating driver only when it opens the chain. Nested notifications
    triggered by these writes find ``depth > 0`` and stop there.
    """

    def __init__(self, owner: DelegatingDriver):
        self.owner = owner
        self.root: ParameterDriver | None = None
        self.depth = 0


    def value_changed(self, previous_value, driver):
        self._update_all(driver, lambda d: d.set_value(driver.value))


    def reference_date_changed(self, previous_reference_date, driver):
        self._update_all(driver, lambda d: d.set_reference_date(driver.reference_date))


    def name_changed(self, previous_name, driver):
        self._update_all(driver, lambda d: d.set_name(driver.name))


    def selection_changed(self, previous_selection, driver):
        self._update_all(driver, lambda d: d.set_selected(driver.selected))


    def _update_all(self, driver: ParameterDriver, update: Callable[[ParameterDriver], None]) -> None:
        first_call = self.depth == 0
        self.depth += 1
        if first_call:
            self.root = driver

        try:
            if driver is self.owner:
                # downwards, each write re-enters here with depth > 0
                for d in self.owner._drivers:
                    if d is not self.root:
                        update(d)
            elif first_call:
                # upwards, once per logical update
                update(self.owner)
        finally:
            self.depth -= 1
            if self.depth == 0:
                self.root = None
