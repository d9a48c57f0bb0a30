# lab_core/patients/models.py
from django.db import models

from lab_core.common.models import DocumentModel


class Patient(DocumentModel):
    """
    Minimal patient record. Registration/CRUD is owned elsewhere; the lab
    pipeline only reads demographics and writes the fields an order edit touches.
    """
    full_name = models.CharField(max_length=255)
    date_of_birth = models.DateField(null=True, blank=True)
    gender = models.CharField(max_length=16, blank=True, default="")
    phone_number = models.CharField(max_length=32, blank=True, default="")
    email = models.EmailField(blank=True, default="")
    address = models.CharField(max_length=512, blank=True, default="")

    class Meta:
        db_table = "patients_patient"
        indexes = [models.Index(fields=["full_name"])]

    def __str__(self) -> str:
        return self.full_name
