# lab_core/patients/selectors.py
from __future__ import annotations

from lab_core.patients.models import Patient


class PatientSelector:
    class NotFound(Exception):
        pass

    @staticmethod
    def get_patient(*, patient_id, for_update: bool = False) -> Patient:
        qs = Patient.objects.select_for_update() if for_update else Patient.objects.all()
        try:
            return qs.get(id=patient_id)
        except Patient.DoesNotExist:
            raise PatientSelector.NotFound()
