import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")

# LLM configuration
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "auto")
LLM_DEFAULT_TIER = os.getenv("LLM_DEFAULT_TIER", "standard")
LLM_MODEL_FAST = os.getenv("LLM_MODEL_FAST", "")
LLM_MODEL_STANDARD = os.getenv("LLM_MODEL_STANDARD", "")
LLM_MODEL_HIGH = os.getenv("LLM_MODEL_HIGH", "")
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.3"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "2048"))

# Demo mode: scripted generator replies, no upstream calls
DUMMY_MODE = _flag("DUMMY_MODE", "false")

# Response reliability
GENERATOR_MAX_AUTO_RETRIES = int(os.getenv("GENERATOR_MAX_AUTO_RETRIES", "2"))
GENERATOR_RETRY_DELAY_SECONDS = float(os.getenv("GENERATOR_RETRY_DELAY_SECONDS", "1.0"))
GENERATOR_TIMEOUT_SECONDS = float(os.getenv("GENERATOR_TIMEOUT_SECONDS", "30"))
REPLY_MAX_LENGTH = int(os.getenv("REPLY_MAX_LENGTH", "500"))

# Conversation limits
FOLLOW_UP_LIMIT = int(os.getenv("FOLLOW_UP_LIMIT", "2"))
MESSAGE_SOFT_LIMIT = int(os.getenv("MESSAGE_SOFT_LIMIT", "15"))
MESSAGE_HARD_LIMIT = int(os.getenv("MESSAGE_HARD_LIMIT", "20"))
COMPLETENESS_WRAP_UP_THRESHOLD = int(os.getenv("COMPLETENESS_WRAP_UP_THRESHOLD", "80"))
COMPLETION_PHRASE_THRESHOLD = int(os.getenv("COMPLETION_PHRASE_THRESHOLD", "60"))

# Completeness weights for the records sub-fields
COMPLETENESS_MEDICATIONS_WEIGHT = int(os.getenv("COMPLETENESS_MEDICATIONS_WEIGHT", "10"))
COMPLETENESS_ALLERGIES_WEIGHT = int(os.getenv("COMPLETENESS_ALLERGIES_WEIGHT", "10"))
COMPLETENESS_PMH_WEIGHT = int(os.getenv("COMPLETENESS_PMH_WEIGHT", "10"))

DATABASE_PATH = os.getenv("DATABASE_PATH", "intake.db")

BASE_DIR = Path(__file__).resolve().parent.parent

# Client delivery queue
DELIVERY_MAX_RETRIES = int(os.getenv("DELIVERY_MAX_RETRIES", "3"))
DELIVERY_STORAGE_DIR = os.getenv("DELIVERY_STORAGE_DIR", str(BASE_DIR / "data" / "queue"))
INTAKE_API_URL = os.getenv("INTAKE_API_URL", "http://localhost:8000")
INTAKE_API_TIMEOUT_SECONDS = float(os.getenv("INTAKE_API_TIMEOUT_SECONDS", "35"))
CONNECTIVITY_POLL_SECONDS = float(os.getenv("CONNECTIVITY_POLL_SECONDS", "5"))
