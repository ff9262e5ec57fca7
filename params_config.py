# Gemini text generation parameters
# REST reference: https://ai.google.dev/api/generate-content

import os

from dotenv import load_dotenv

load_dotenv()

GEMINI_API_URL = os.environ.get("GEMINI_API_URL", "https://generativelanguage.googleapis.com/v1beta")

# Flash is fast enough to run inside the quota transaction
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")

GOOGLE_API_KEY = os.environ.get("GOOGLE_API_KEY", "")

# Sampling
TEMPERATURE = float(os.environ.get("GEMINI_TEMPERATURE", "0.9"))
MAX_OUTPUT_TOKENS = int(os.environ.get("GEMINI_MAX_OUTPUT_TOKENS", "1024"))

# Hard deadline for one generation call (seconds).
# Must stay below TRANSACTION_TIMEOUT_SECONDS in db_config.
GENERATION_TIMEOUT_SECONDS = float(os.environ.get("GENERATION_TIMEOUT_SECONDS", "30"))

# Prompt template, loaded from an external file for easy editing
PROMPT_FILE = "prompt_template.txt"

# Generations allowed per email
MAX_GENERATIONS = int(os.environ.get("MAX_GENERATIONS", "2"))
