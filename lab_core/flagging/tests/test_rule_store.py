import pytest

from lab_core.flagging.models import FlaggingConfiguration
from lab_core.flagging.resolver import FlaggingConfigurationStore, FlagResolver

pytestmark = pytest.mark.django_db


def test_store_serves_only_active_rules_for_the_parameter(parameters):
    wbc, plt = parameters["WBC"], parameters["PLT"]
    active = FlaggingConfiguration.objects.create(parameter=wbc, reference_range_min=4.5, reference_range_max=11.0)
    FlaggingConfiguration.objects.create(parameter=wbc, reference_range_min=1, reference_range_max=2, is_active=False)
    FlaggingConfiguration.objects.create(parameter=plt, reference_range_min=150, reference_range_max=400)

    rules = FlaggingConfigurationStore().active_rules(wbc.id)

    assert [r.id for r in rules] == [active.id]
    assert (rules[0].low, rules[0].high, rules[0].gender) == (4.5, 11.0, None)


def test_db_backed_resolution_picks_male_adult_rule(parameters):
    wbc = parameters["WBC"]
    FlaggingConfiguration.objects.create(parameter=wbc, reference_range_min=4.0, reference_range_max=10.0)
    specific = FlaggingConfiguration.objects.create(
        parameter=wbc,
        gender="male",
        age_group="adult",
        reference_range_min=5.0,
        reference_range_max=9.0,
        flag_type="critical",
    )

    verdict = FlagResolver(store=FlaggingConfigurationStore()).resolve(
        parameter_id=wbc.id, value=9.5, gender="male", age_group="adult"
    )

    assert verdict.configuration_id == specific.id
    assert verdict.is_flagged is True
    assert verdict.flag_type == "critical"
