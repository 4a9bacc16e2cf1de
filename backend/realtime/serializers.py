from rest_framework import serializers


class BroadcastSerializer(serializers.Serializer):
    """
    Body of POST /broadcast.
    Sends one frame to every connected client, or only to a room when given.
    """
    event = serializers.CharField(max_length=255)
    data = serializers.JSONField()
    room = serializers.CharField(max_length=255, required=False, allow_blank=True)

    def validate_data(self, value):
        # Empty objects and lists are valid payloads; other empty values are not
        if not value and not isinstance(value, (dict, list)):
            raise serializers.ValidationError("Data is required.")
        return value
