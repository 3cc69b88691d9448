from dotenv import load_dotenv
import os

load_dotenv()


ANALYTICS_BASE_URL = os.getenv("ANALYTICS_BASE_URL", "https://api.3learn.xyz")
NOTES_BASE_URL = os.getenv("NOTES_BASE_URL", "http://localhost:8010")
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
AWS_S3_BUCKET = os.getenv("AWS_S3_BUCKET")
SAMPLE_RATE = 16000
SEGMENT_DURATION_MS = int(os.getenv("SEGMENT_DURATION_MS", "5000"))
CAPTURE_INTERVAL_MS = int(os.getenv("CAPTURE_INTERVAL_MS", "2000"))
FLUSH_INTERVAL_MS = int(os.getenv("FLUSH_INTERVAL_MS", "10000"))
POLL_INTERVAL_MS = int(os.getenv("POLL_INTERVAL_MS", "5000"))
JPEG_QUALITY = 80
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
STUN_URL = os.getenv("STUN_URL", "stun:stun.l.google.com:19302")
