"""Client modules for external service integrations."""

from voice_profile.clients.supabase_client import (
    SupabaseClient,
    VoiceProfileRepository,
    EnrollmentSampleRepository,
    DatabaseManager
)

from voice_profile.clients.capture_client import (
    WebSocketMicrophone,
    CaptureError,
    CaptureDeviceError,
    MicrophonePermissionError
)

__all__ = [
    "SupabaseClient",
    "VoiceProfileRepository",
    "EnrollmentSampleRepository",
    "DatabaseManager",
    "WebSocketMicrophone",
    "CaptureError",
    "CaptureDeviceError",
    "MicrophonePermissionError"
]
