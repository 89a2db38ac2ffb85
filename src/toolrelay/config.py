import os

from pydantic import BaseModel

from toolrelay.connection import DEFAULT_CLIENT_NAME


class Settings(BaseModel):
    """Runtime configuration.

    Example:
        settings = Settings.from_env()
        app = create_app(settings)
    """

    api_key: str | None = None
    model: str = "gpt-4o-mini"
    base_url: str | None = None
    max_tool_rounds: int = 10
    client_name: str = DEFAULT_CLIENT_NAME

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        values = {
            "api_key": env.get("OPENAI_API_KEY") or None,
            "model": env.get("LLM_MODEL"),
            "base_url": env.get("OPENAI_BASE_URL") or None,
            "max_tool_rounds": env.get("TOOLRELAY_MAX_TOOL_ROUNDS"),
            "client_name": env.get("TOOLRELAY_CLIENT_NAME"),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})
