import os
from dotenv import load_dotenv

load_dotenv()

# ---- LLM / AI Integration ----
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

# Set to "rule" for keyword classification only, or "auto" (default) to
# consult the LLM classifier when the rule tier is not confident enough.
CLASSIFIER_MODE = os.getenv("CLASSIFIER_MODE", "auto")

LLM_CONFIDENCE_THRESHOLD = float(os.getenv("LLM_CONFIDENCE_THRESHOLD", "0.8"))
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "2"))

# ---- Document traversal ----
MAX_FLATTEN_DEPTH = int(os.getenv("MAX_FLATTEN_DEPTH", "1000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
