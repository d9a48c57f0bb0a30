# lab_core/conftest.py
import random
from datetime import date

import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from lab_core.catalog.models import Instrument, InstrumentMode, Parameter
from lab_core.common.wiring import build_container
from lab_core.hl7.simulator import ResultSimulator
from lab_core.patients.models import Patient
from lab_core.reagents.services import DEFAULT_REQUIRED_REAGENTS
from lab_core.tests.helpers import install_lot, make_lot


@pytest.fixture
def user(db):
    User = get_user_model()
    return User.objects.create_user(username="labtech", password="testpass", is_active=True)


@pytest.fixture
def api_client(user):
    c = APIClient()
    c.force_authenticate(user=user)
    return c


@pytest.fixture
def container(db):
    """Fresh component graph with a seeded simulator."""
    return build_container(simulator=ResultSimulator(rng=random.Random(7)))


@pytest.fixture
def patient(db):
    return Patient.objects.create(
        full_name="Jane Roe",
        date_of_birth=date(1985, 4, 12),
        gender="female",
        phone_number="555-0100",
    )


@pytest.fixture
def male_adult(db):
    return Patient.objects.create(full_name="John Doe", date_of_birth=date(1980, 1, 1), gender="male")


@pytest.fixture
def instrument(db):
    return Instrument.objects.create(name="XN-1000", model_name="XN", serial_number="SN-001", mode=InstrumentMode.READY)


@pytest.fixture
def parameters(db):
    """WBC/PLT with plain ranges, HGB with sex-specific ranges."""
    return {
        "WBC": Parameter.objects.create(
            parameter_code="WBC",
            parameter_name="White Blood Cells",
            unit="10^3/uL",
            normal_range={"min": 4.5, "max": 11.0},
        ),
        "HGB": Parameter.objects.create(
            parameter_code="HGB",
            parameter_name="Hemoglobin",
            unit="g/dL",
            normal_range={"male": {"min": 13.5, "max": 17.5}, "female": {"min": 12.0, "max": 15.5}},
        ),
        "PLT": Parameter.objects.create(
            parameter_code="PLT",
            parameter_name="Platelets",
            unit="10^3/uL",
            normal_range={"min": 150, "max": 400},
        ),
    }


@pytest.fixture
def installed_reagents(db, instrument):
    """Every required reagent in use on the instrument with 50 units left."""
    out = {}
    for name in DEFAULT_REQUIRED_REAGENTS:
        lot = make_lot(name, f"LOT-{name.upper()}")
        out[name] = install_lot(instrument, lot)
    return out
