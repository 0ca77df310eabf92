import os

from dotenv import load_dotenv


load_dotenv()


class Settings:
    """
    Server-side environment variables.
        - MONGO_URL / MONGO_DB: document database holding users, conversations and messages
        - JWT_SECRET / JWT_ALGORITHM: bearer tokens issued by the user-management service
        - REDIS_URL: optional; enables cross-process fan-out and presence keys
        - MESSAGE_MAX_LENGTH: upper bound on message content after trimming
        - TYPING_QUIET_PERIOD: seconds before an unrenewed typing flag expires
    """

    MONGO_URL: str = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    MONGO_DB: str = os.getenv("MONGO_DB", "marketchat")

    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-me-outside-local-development")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

    REDIS_URL: str = os.getenv("REDIS_URL", "")
    PRESENCE_TTL_SECONDS: int = int(os.getenv("PRESENCE_TTL_SECONDS", "60"))

    MESSAGE_MAX_LENGTH: int = int(os.getenv("MESSAGE_MAX_LENGTH", "2000"))
    TYPING_QUIET_PERIOD: float = float(os.getenv("TYPING_QUIET_PERIOD", "3"))


class ClientSettings:
    """
    Settings for the client conversation controller.
        - API_BASE_URL: REST API root
        - GATEWAY_URL: real-time gateway WebSocket endpoint
    """

    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8000")
    GATEWAY_URL: str = os.getenv("GATEWAY_URL", "ws://localhost:8000/ws")
    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "10"))
    RECONNECT_ATTEMPTS: int = int(os.getenv("RECONNECT_ATTEMPTS", "5"))
    RECONNECT_DELAY: float = float(os.getenv("RECONNECT_DELAY", "1"))
    TYPING_QUIET_PERIOD: float = float(os.getenv("TYPING_QUIET_PERIOD", "3"))


settings = Settings()
client_settings = ClientSettings()
