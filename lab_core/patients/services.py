# lab_core/patients/services.py
from __future__ import annotations

from datetime import date

from django.utils import timezone
from rest_framework.exceptions import NotFound

from lab_core.patients.models import Patient
from lab_core.patients.selectors import PatientSelector

DEMOGRAPHIC_FIELDS = ("full_name", "date_of_birth", "gender", "phone_number", "address")

_SEX_ALIASES = {
    "m": "male",
    "male": "male",
    "f": "female",
    "female": "female",
}


def normalize_sex(value: str | None) -> str | None:
    """'M'/'male'/'Male' -> 'male'; anything unrecognised -> None."""
    if not value:
        return None
    return _SEX_ALIASES.get(str(value).strip().lower())


def age_group_for(date_of_birth: date | None, *, today: date | None = None) -> str | None:
    """
    Coarse age bracket used as a flagging dimension:
      < 1 year -> infant, < 18 years -> child, otherwise adult.
    """
    if date_of_birth is None:
        return None
    today = today or timezone.localdate()
    years = today.year - date_of_birth.year - ((today.month, today.day) < (date_of_birth.month, date_of_birth.day))
    if years < 1:
        return "infant"
    if years < 18:
        return "child"
    return "adult"


class PatientDirectory:
    """
    Patient-lookup collaborator for the order pipeline.
    """

    def get(self, patient_id, *, for_update: bool = False) -> Patient:
        try:
            return PatientSelector.get_patient(patient_id=patient_id, for_update=for_update)
        except PatientSelector.NotFound:
            raise NotFound("Patient not found")

    def flagging_profile(self, patient: Patient | None) -> tuple[str | None, str | None]:
        """(sex, age_group) used by the flag resolver; (None, None) for unmatched samples."""
        if patient is None:
            return None, None
        return normalize_sex(patient.gender), age_group_for(patient.date_of_birth)

    def update_demographics(self, patient: Patient, data: dict) -> list[str]:
        changed: list[str] = []
        for field in DEMOGRAPHIC_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if value is None and field != "date_of_birth":
                value = ""
            if getattr(patient, field) != value:
                setattr(patient, field, value)
                changed.append(field)
        if changed:
            patient.save(update_fields=[*changed, "updated_at"])
        return changed
