import inspect
import os
import pytest

from blockchat_fleet.common import *


def test_variant_parse():
    assert Variant.parse('unfair') == Variant.UNFAIR
    assert Variant.parse(Variant.DUAL_INSTANCE) == Variant.DUAL_INSTANCE
    assert Variant.has_value('dual-instance')
    with pytest.raises(ConfigurationError):
        Variant.parse('ten')


def test_failure_policy_values():
    assert FailurePolicy.has_value(2)
    assert not FailurePolicy.has_value(3)


def test_fleet_temp_dir():
    temp_dir = get_fleet_temp_dir()
    assert os.path.isdir(temp_dir)
    assert temp_dir.endswith('blockchat_fleet.{}'.format(os.getpid()))
    assert get_fleet_temp_dir() == temp_dir

    assert remove_fleet_temp_dir(cleanup=False)
    assert os.path.isdir(temp_dir)
    assert remove_fleet_temp_dir()
    assert not os.path.exists(temp_dir)


def test_defaults_are_in_lexical_order():
    import blockchat_fleet.common as common
    names = [line.split('=')[0] for line in
             inspect.getsource(common).splitlines()
             if line.startswith('DEFAULT_FLEET_')]
    assert names == sorted(names)
    assert DEFAULT_FLEET_SECONDARY_SERVICE_NAME == 'block_chat_2'
