"""
Runtime view and persistence of provider, key, model and cookie settings.

Outside production, updates are written to the local env file with
python-dotenv and the in-memory settings are reloaded. In production
(Vercel or ENVIRONMENT=production) the filesystem is not writable, so an
update only returns the environment variables the operator has to set.
"""

import logging
from pathlib import Path
from typing import Any

from dotenv import set_key

from bilinote.config import Settings

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("qwen", "kimi")

ENV_FILE_TEMPLATE = """# Local development environment
# Qwen (DashScope) API key for AI notes
QWEN_API_KEY=

# Qwen model (optional)
QWEN_MODEL=qwen-plus

# System prompt (optional, defines the assistant's role and style)
# SYSTEM_PROMPT=

# Prompt template (optional, must contain {title} and {subtitle})
# PROMPT_TEMPLATE=

# Bilibili session cookie (needed to list AI subtitles)
BILIBILI_COOKIE=
"""


def _truncate(value: str, limit: int = 20) -> str:
    return value[:limit] + ("..." if len(value) > limit else "")


class ConfigStore:
    """Reads and updates the note-generation and cookie settings."""

    def __init__(self, config: Settings | None = None):
        self.config = config or Settings()

    @property
    def env_path(self) -> Path:
        return Path(self.config.env_file_path)

    def snapshot(self) -> dict[str, Any]:
        """Current configuration as returned by ``GET /api/config``."""
        config = self.config
        required = {
            "AI_PROVIDER": config.ai_provider,
            "QWEN_API_KEY": config.qwen_api_key,
            "KIMI_API_KEY": config.kimi_api_key,
        }
        missing = [key for key, value in required.items() if not value]
        has_key = bool(config.active_api_key)

        return {
            "success": True,
            "provider": config.ai_provider,
            "qwen": {
                "api_key": config.qwen_api_key,
                "model": config.qwen_model,
                "has_key": bool(config.qwen_api_key),
            },
            "kimi": {
                "api_key": config.kimi_api_key,
                "model": config.kimi_model,
                "has_key": bool(config.kimi_api_key),
            },
            "bilibili_cookie": config.bilibili_cookie,
            "has_cookie": bool(config.bilibili_cookie),
            # Flat fields for older front-ends
            "has_key": has_key,
            "api_key": config.active_api_key,
            "key_preview": "已配置" if has_key else "未配置",
            "environment": {
                "is_production": config.is_production,
                "all_vars_configured": not missing,
                "missing_vars": missing,
            },
        }

    def _production_guide(
        self, api_key: str | None, provider: str, model: str | None, bilibili_cookie: str | None
    ) -> dict[str, Any]:
        env_vars: dict[str, str] = {"AI_PROVIDER": provider}
        if provider == "kimi":
            env_vars["KIMI_API_KEY"] = api_key or ""
            env_vars["KIMI_MODEL"] = model or "kimi-k2-0905-preview"
        else:
            env_vars["QWEN_API_KEY"] = api_key or ""
            env_vars["QWEN_MODEL"] = model or "qwen-plus"
        if bilibili_cookie:
            env_vars["BILIBILI_COOKIE"] = bilibili_cookie

        return {
            "success": True,
            "message": "Configuration generated; set these variables in your hosting dashboard",
            "is_production": True,
            "guide": {
                "title": "Production configuration",
                "steps": [
                    "Open the project's environment variable settings",
                    "Add the following variables:",
                    *(f"  {key}={_truncate(value)}" for key, value in env_vars.items()),
                    "Save and redeploy",
                ],
            },
            "env_variables": env_vars,
            "warning": "Configuration files cannot be written in production",
        }

    def update(
        self,
        api_key: str | None = None,
        provider: str = "qwen",
        model: str | None = None,
        bilibili_cookie: str | None = None,
    ) -> dict[str, Any]:
        """
        Persist new settings.

        Args:
            api_key: Key for ``provider``; when omitted only the cookie is written
            provider: "qwen" or "kimi"
            model: Model for ``provider`` (optional)
            bilibili_cookie: New session cookie (None leaves it unchanged)

        Returns:
            Response payload for ``POST /api/config``

        Raises:
            ValueError: Unknown provider
        """
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported AI provider: {provider}")

        if self.config.is_production:
            logger.info("Production mode: returning configuration guide instead of writing")
            return self._production_guide(api_key, provider, model, bilibili_cookie)

        path = self.env_path
        if not path.exists():
            logger.info(f"Creating {path} from template")
            path.write_text(ENV_FILE_TEMPLATE, encoding="utf-8")

        if bilibili_cookie is not None:
            set_key(path, "BILIBILI_COOKIE", bilibili_cookie)
            logger.info(f"Bilibili cookie updated ({len(bilibili_cookie)} characters)")

        if not api_key:
            self.reload()
            return {"success": True, "message": "Cookie saved"}

        prefix = provider.upper()
        set_key(path, "AI_PROVIDER", provider)
        set_key(path, f"{prefix}_API_KEY", api_key)
        if model:
            set_key(path, f"{prefix}_MODEL", model)
        logger.info(f"{provider} API key updated ({len(api_key)} characters)")

        self.reload()
        return {"success": True, "message": "API key saved"}

    def reload(self) -> Settings:
        """Re-read settings, including the env file just written."""
        self.config = Settings(
            _env_file=(".env", self.env_path), env_file_path=str(self.env_path)
        )
        return self.config
