# lab_core/flagging/filters.py
import django_filters as df

from lab_core.flagging.models import FlaggingConfiguration


class FlaggingConfigurationFilter(df.FilterSet):
    parameter_id = df.CharFilter(field_name="parameter_id")
    gender = df.CharFilter(field_name="gender")
    age_group = df.CharFilter(field_name="age_group")
    flag_type = df.CharFilter(field_name="flag_type")
    is_active = df.BooleanFilter(field_name="is_active")

    class Meta:
        model = FlaggingConfiguration
        fields = ["parameter_id", "gender", "age_group", "flag_type", "is_active"]
