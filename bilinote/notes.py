"""
Study-note generation from an extracted transcript.

Two LLM backends are supported, selected by ``Settings.ai_provider``:

    - qwen: DashScope text-generation API (default)
    - kimi: Moonshot's OpenAI-compatible chat completions API

When the remote call fails for any reason the caller gets a deterministic
Markdown note built from the transcript instead of an error.
"""

import logging

import httpx

from bilinote.config import Settings

logger = logging.getLogger(__name__)

QWEN_API_URL = "https://dashscope.aliyuncs.com/api/v1/services/aigc/text-generation/generation"
KIMI_API_URL = "https://api.moonshot.cn/v1/chat/completions"

DEFAULT_PROMPT_TEMPLATE = """你是一个专业的学习笔记生成助手。请根据以下视频字幕内容，生成一份结构化的Markdown学习笔记。

要求：
1. 在开头生成一段150字左右的核心内容摘要（Summary）
2. 分析全文，划分出合乎逻辑的段落和主题，生成带有多级标题的Markdown大纲
3. 在结尾以无序列表的形式，提炼出3-5个最重要的关键知识点（Key Takeaways）
4. 使用清晰的Markdown格式，包括标题、列表、加粗等
5. 保持专业、简洁、易于理解

视频标题：{title}

字幕内容：
{subtitle}

请生成学习笔记："""


class NoteGenerationError(Exception):
    """The LLM provider could not produce a note."""


def build_prompt(template: str, title: str, subtitle: str) -> str:
    """Fill ``{title}`` and ``{subtitle}``; other braces are left alone."""
    return template.replace("{title}", title, 1).replace("{subtitle}", subtitle, 1)


def generate_simple_notes(title: str, subtitle: str) -> str:
    """Deterministic Markdown note used when no LLM result is available."""
    return f"""# {title}

## 📝 内容摘要

这是关于"{title}"的视频内容。以下是基于字幕的文本整理。

## 📖 字幕内容

{subtitle}

## 🔑 关键要点

- 详细内容请查看上方字幕文本
- 建议结合视频进行学习
- 可以根据需要整理自己的笔记

---

*注意：此笔记是基于字幕自动生成，建议人工审核和补充。*
"""


class NoteGenerator:
    """Turns (title, transcript) into a Markdown study note."""

    def __init__(
        self,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or Settings()
        self._transport = transport

    def _messages(self, title: str, subtitle: str) -> list[dict[str, str]]:
        template = self.config.prompt_template or DEFAULT_PROMPT_TEMPLATE
        prompt = build_prompt(template, title, subtitle)
        logger.info(
            f"Prompt: {len(prompt)} characters "
            f"({'custom' if self.config.prompt_template else 'default'} template), "
            f"transcript {len(subtitle)} characters"
        )

        messages = []
        if self.config.system_prompt:
            messages.append({"role": "system", "content": self.config.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def _post(self, url: str, api_key: str, body: dict, provider: str) -> dict:
        try:
            async with httpx.AsyncClient(
                timeout=self.config.llm_timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url,
                    json=body,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            detail = _provider_error_message(e.response) or str(e)
            logger.error(f"{provider} API error: {detail}")
            raise NoteGenerationError(f"{provider} request failed: {detail}") from e
        except httpx.HTTPError as e:
            logger.error(f"{provider} API transport error: {e}")
            raise NoteGenerationError(f"{provider} request failed: {e}") from e
        except ValueError as e:
            raise NoteGenerationError(f"{provider} returned invalid JSON") from e

    async def generate_with_qwen(self, title: str, subtitle: str) -> str:
        """Generate a note with DashScope (Qwen)."""
        api_key = self.config.qwen_api_key
        if not api_key:
            raise NoteGenerationError("QWEN_API_KEY is not configured")

        logger.info(f"Calling Qwen model {self.config.qwen_model}")
        data = await self._post(
            QWEN_API_URL,
            api_key,
            {
                "model": self.config.qwen_model,
                "input": {"messages": self._messages(title, subtitle)},
                "parameters": {
                    "result_format": "message",
                    "max_tokens": self.config.max_tokens,
                    "temperature": 0.7,
                    "top_p": 0.8,
                },
            },
            "Qwen",
        )

        try:
            content = data["output"]["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise NoteGenerationError("AI返回内容格式异常")
        logger.info(f"Qwen note generated, {len(content)} characters")
        return content

    async def generate_with_kimi(self, title: str, subtitle: str) -> str:
        """Generate a note with Moonshot (Kimi)."""
        api_key = self.config.kimi_api_key
        if not api_key:
            raise NoteGenerationError("KIMI_API_KEY is not configured")

        logger.info(f"Calling Kimi model {self.config.kimi_model}")
        data = await self._post(
            KIMI_API_URL,
            api_key,
            {
                "model": self.config.kimi_model,
                "messages": self._messages(title, subtitle),
                "temperature": 0.7,
                "max_tokens": self.config.max_tokens,
            },
            "Kimi",
        )

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise NoteGenerationError("AI返回内容格式异常")
        logger.info(f"Kimi note generated, {len(content)} characters")
        return content

    async def generate(self, title: str, subtitle: str) -> str:
        """
        Generate a note with the configured provider.

        Raises:
            NoteGenerationError: Missing key, HTTP failure or unexpected payload
        """
        if self.config.ai_provider == "kimi":
            return await self.generate_with_kimi(title, subtitle)
        return await self.generate_with_qwen(title, subtitle)

    async def generate_with_fallback(self, title: str, subtitle: str) -> tuple[str, bool]:
        """
        Generate a note, falling back to ``generate_simple_notes``.

        Returns:
            Tuple of (markdown, used_ai)
        """
        try:
            return await self.generate(title, subtitle), True
        except NoteGenerationError as e:
            logger.warning(f"AI note generation failed, using plain format: {e}")
            return generate_simple_notes(title, subtitle), False


def _provider_error_message(response: httpx.Response) -> str | None:
    """Pull the provider's own error text out of an error response."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return payload.get("message")
