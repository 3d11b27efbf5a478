########################################################################################
##
##                                  TESTS FOR
##                          'utils/parameter_driver.py'
##
########################################################################################

# IMPORTS ==============================================================================

import numpy as np
import pytest

from batchod.errors import ConfigurationError
from batchod.utils.parameter_driver import ParameterDriver, ParameterObserver


# HELPERS ==============================================================================

class _RecordingObserver(ParameterObserver):
    """Stores every notification as (kind, previous, driver)."""

    def __init__(self):
        self.calls = []

    def value_changed(self, previous_value, driver):
        self.calls.append(("value", previous_value, driver))

    def reference_date_changed(self, previous_reference_date, driver):
        self.calls.append(("date", previous_reference_date, driver))

    def name_changed(self, previous_name, driver):
        self.calls.append(("name", previous_name, driver))

    def selection_changed(self, previous_selection, driver):
        self.calls.append(("selection", previous_selection, driver))


# TESTS ================================================================================

class TestParameterDriverConstruction:

    def test_scalar_driver(self):
        d = ParameterDriver("k", 2.0, 1.0)
        assert d.name == "k"
        assert d.dimension == 1
        np.testing.assert_array_equal(d.value, [2.0])
        np.testing.assert_array_equal(d.reference_value, [2.0])
        assert not d.selected
        assert d.reference_date is None

    def test_vector_driver_broadcasts_scale_and_bounds(self):
        d = ParameterDriver("offset", [1.0, 2.0, 3.0], 0.5, -10.0, 10.0)
        assert d.dimension == 3
        np.testing.assert_array_equal(d.scale, [0.5, 0.5, 0.5])
        np.testing.assert_array_equal(d.min_value, [-10.0] * 3)
        np.testing.assert_array_equal(d.max_value, [10.0] * 3)

    def test_zero_scale_raises(self):
        with pytest.raises(ConfigurationError, match="scale"):
            ParameterDriver("k", 1.0, 0.0)

    def test_inverted_bounds_raise(self):
        with pytest.raises(ConfigurationError, match="lower bound"):
            ParameterDriver("k", 1.0, 1.0, 5.0, 2.0)

    def test_bounds_dimension_mismatch_raises(self):
        with pytest.raises(ConfigurationError, match="min_value"):
            ParameterDriver("k", [1.0, 2.0], 1.0, [0.0, 0.0, 0.0])

    def test_empty_reference_raises(self):
        with pytest.raises(ConfigurationError, match="empty"):
            ParameterDriver("k", [], 1.0)

    def test_reference_outside_bounds_warns_and_clips(self):
        with pytest.warns(UserWarning, match="outside bounds"):
            d = ParameterDriver("k", 20.0, 1.0, 0.0, 10.0)
        np.testing.assert_array_equal(d.value, [10.0])


class TestParameterDriverValue:

    def test_value_is_a_copy(self):
        d = ParameterDriver("k", [1.0, 2.0], 1.0)
        v = d.value
        v[0] = 100.0
        np.testing.assert_array_equal(d.value, [1.0, 2.0])

    def test_set_value_clips_into_bounds(self):
        d = ParameterDriver("k", 1.0, 1.0, 0.0, 2.0)
        d.value = 5.0
        np.testing.assert_array_equal(d.value, [2.0])
        d.set_value(-3.0)
        np.testing.assert_array_equal(d.value, [0.0])

    def test_set_value_wrong_dimension_raises(self):
        d = ParameterDriver("k", [1.0, 2.0], 1.0)
        with pytest.raises(ConfigurationError, match="dimension"):
            d.set_value([1.0, 2.0, 3.0])

    def test_normalized_value(self):
        d = ParameterDriver("mu", 100.0, 4.0)
        d.value = 108.0
        np.testing.assert_allclose(d.normalized_value, [2.0])
        d.normalized_value = -1.0
        np.testing.assert_allclose(d.value, [96.0])

    def test_repr(self):
        r = repr(ParameterDriver("k", 1.5, 1.0))
        assert "k" in r
        assert "1.5" in r


class TestParameterDriverObservers:

    def test_value_write_notifies_with_previous_value(self):
        d = ParameterDriver("k", 1.0, 1.0)
        obs = _RecordingObserver()
        d.add_observer(obs)
        d.value = 3.0
        kind, previous, driver = obs.calls[-1]
        assert kind == "value"
        np.testing.assert_array_equal(previous, [1.0])
        assert driver is d

    def test_unchanged_write_still_notifies(self):
        d = ParameterDriver("k", 1.0, 1.0)
        obs = _RecordingObserver()
        d.add_observer(obs)
        d.value = 1.0
        d.value = 1.0
        assert [c[0] for c in obs.calls] == ["value", "value"]

    def test_selection_date_and_name_notify(self):
        d = ParameterDriver("k", 1.0, 1.0)
        obs = _RecordingObserver()
        d.add_observer(obs)

        d.selected = True
        d.reference_date = 60.0
        d.name = "k2"

        assert [c[0] for c in obs.calls] == ["selection", "date", "name"]
        assert obs.calls[0][1] is False
        assert obs.calls[1][1] is None
        assert obs.calls[2][1] == "k"
        assert d.selected
        assert d.reference_date == 60.0
        assert d.name == "k2"

    def test_remove_observer(self):
        d = ParameterDriver("k", 1.0, 1.0)
        obs = _RecordingObserver()
        d.add_observer(obs)
        d.remove_observer(obs)
        d.value = 2.0
        assert obs.calls == []
        assert d.observers == ()

    def test_remove_unknown_observer_is_noop(self):
        d = ParameterDriver("k", 1.0, 1.0)
        d.remove_observer(_RecordingObserver())
        assert d.observers == ()
