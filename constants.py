import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3002))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# Comma separated; "*" allows every origin
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Rooms auto-created by a join get this capacity
DEFAULT_MAX_PARTICIPANTS = int(os.getenv("DEFAULT_MAX_PARTICIPANTS", 5))

REDIS_ENABLED = os.getenv("REDIS_ENABLED", "false").lower() == "true"
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
PRESENCE_TTL = int(os.getenv("PRESENCE_TTL", 3600))

# Media engine
MEDIA_WORKERS = int(os.getenv("MEDIA_WORKERS", os.cpu_count() or 1))
RTC_MIN_PORT = int(os.getenv("RTC_MIN_PORT", 10000))
RTC_MAX_PORT = int(os.getenv("RTC_MAX_PORT", 59999))
ANNOUNCED_IP = os.getenv("ANNOUNCED_IP", "127.0.0.1")
INITIAL_AVAILABLE_OUTGOING_BITRATE = 1000000
MAX_INCOMING_BITRATE = 1500000

MEDIA_CODECS = [
    {
        "kind": "audio",
        "mimeType": "audio/opus",
        "clockRate": 48000,
        "channels": 2,
        "parameters": {
            "useinbandfec": 1,
            "usedtx": 0,
            "maxaveragebitrate": 128000,
            "stereo": 1,
            "spropstereo": 1,
        },
    },
    {
        "kind": "video",
        "mimeType": "video/VP9",
        "clockRate": 90000,
        "parameters": {"x-google-start-bitrate": 1000},
    },
    {
        "kind": "video",
        "mimeType": "video/H264",
        "clockRate": 90000,
        "parameters": {
            "packetization-mode": 1,
            "profile-level-id": "4d0032",
            "level-asymmetry-allowed": 1,
        },
    },
]
