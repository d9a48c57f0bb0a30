from __future__ import annotations

from rest_framework import serializers

from lab_core.flagging.models import FlagType, FlaggingConfiguration, Gender


class FlaggingConfigurationCreateSerializer(serializers.Serializer):
    parameter_id = serializers.CharField(max_length=24)
    gender = serializers.ChoiceField(choices=Gender.choices, required=False, allow_null=True, allow_blank=True)
    age_group = serializers.CharField(max_length=32, required=False, allow_null=True, allow_blank=True)
    reference_range_min = serializers.FloatField(required=False, allow_null=True)
    reference_range_max = serializers.FloatField(required=False, allow_null=True)
    flag_type = serializers.ChoiceField(choices=FlagType.choices, default=FlagType.WARNING)
    description = serializers.CharField(max_length=512, required=False, allow_blank=True)
    is_active = serializers.BooleanField(required=False, default=True)

    def validate(self, attrs):
        low, high = attrs.get("reference_range_min"), attrs.get("reference_range_max")
        if low is not None and high is not None and low >= high:
            raise serializers.ValidationError(
                {"reference_range_min": "reference_range_min must be less than reference_range_max"}
            )
        return attrs


class FlaggingConfigurationUpdateSerializer(serializers.Serializer):
    gender = serializers.ChoiceField(choices=Gender.choices, required=False, allow_null=True, allow_blank=True)
    age_group = serializers.CharField(max_length=32, required=False, allow_null=True, allow_blank=True)
    reference_range_min = serializers.FloatField(required=False, allow_null=True)
    reference_range_max = serializers.FloatField(required=False, allow_null=True)
    flag_type = serializers.ChoiceField(choices=FlagType.choices, required=False)
    description = serializers.CharField(max_length=512, required=False, allow_blank=True)
    is_active = serializers.BooleanField(required=False)


class FlaggingSyncSerializer(serializers.Serializer):
    # items are validated one by one in the service so a bad row doesn't sink the batch
    configurations = serializers.ListField(child=serializers.JSONField(), allow_empty=False)


class FlaggingSyncReportSerializer(serializers.Serializer):
    created = serializers.IntegerField()
    updated = serializers.IntegerField()
    failed = serializers.IntegerField()
    errors = serializers.ListField(child=serializers.DictField())


class FlaggingConfigurationSerializer(serializers.ModelSerializer):
    parameter_id = serializers.CharField(read_only=True)
    parameter_code = serializers.CharField(source="parameter.parameter_code", read_only=True)

    class Meta:
        model = FlaggingConfiguration
        fields = [
            "id",
            "parameter_id",
            "parameter_code",
            "gender",
            "age_group",
            "reference_range_min",
            "reference_range_max",
            "flag_type",
            "description",
            "is_active",
            "created_by",
            "updated_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields
