import os


class Config:
    """Defaults; anything here can be overridden with a MEDCHAIN_ prefixed env var"""
    SECRET_KEY = 'dev-secret-key-change-in-production'

    # Generative assistant. Without a key the offline assistant is used.
    GEMINI_API_KEY = os.environ.get('GEMINI_API_KEY') or os.environ.get('API_KEY')
    GEMINI_MODEL = 'gemini-3-flash-preview'
    GEMINI_PRO_MODEL = 'gemini-3-pro-preview'
    GEMINI_BASE_URL = 'https://generativelanguage.googleapis.com/v1beta'
    ASSISTANT_TIMEOUT = 20  # seconds
    ASSISTANT_MAX_RETRIES = 1

    FIXTURE_PATH = None  # None means the bundled seed.json
    LOG_LEVEL = 'INFO'
