from rest_framework import serializers

from lab_core.audit.models import EventLog


class EventLogSerializer(serializers.ModelSerializer):
    # Keep API field name "timestamp", mapped to the model's occurred_at
    timestamp = serializers.DateTimeField(source="occurred_at", read_only=True)

    class Meta:
        model = EventLog
        fields = [
            "id",
            "action_type",
            "event_code",
            "entity_type",
            "entity_id",
            "actor_user_id",
            "description",
            "timestamp",
            "metadata",
        ]
        read_only_fields = fields
