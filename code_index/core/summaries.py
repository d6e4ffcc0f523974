import logging
import os
from typing import Any, Dict, Optional

from openai import AsyncOpenAI, OpenAIError

from code_index.core.models import CodeElement, ElementType

logger = logging.getLogger("mcp.llm")

# Elements shorter than this are not worth a description.
MIN_DESCRIBED_LENGTH = 50


class DescriptionGenerator:
    """Generates short natural language descriptions for code elements using an LLM."""

    def __init__(self, llm_config: Optional[Dict[str, Any]] = None):
        self.config = llm_config or {}
        self.api_key = os.environ.get(self.config.get('api_key_env_var', 'OPENAI_API_KEY'))

        # Priority: Env Var > Config > Default
        self.base_url = os.environ.get('OPENAI_BASE_URL', self.config.get('base_url', 'https://api.openai.com/v1'))
        self.model = os.environ.get('OPENAI_SUMMARY_MODEL', self.config.get('model', 'gpt-4o-mini'))

        self.max_tokens = self.config.get('max_tokens', 150)
        self.max_input_chars = self.config.get('max_input_chars', 4000)

        if not self.api_key:
            logger.warning("No API key found for DescriptionGenerator. Descriptions will be skipped.")

        self.client = AsyncOpenAI(api_key=self.api_key or "missing", base_url=self.base_url)

    def should_describe(self, element: CodeElement) -> bool:
        if element.type in (ElementType.IMPORT, ElementType.EXPORT):
            return False
        return len(element.content) > MIN_DESCRIBED_LENGTH

    async def generate_description(self, element: CodeElement) -> Optional[str]:
        """
        Describe ``element`` in a sentence or two.

        Returns None when skipped or when the provider call fails; a missing
        description never blocks indexing.
        """
        if not self.api_key or not self.should_describe(element):
            return None
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You are an expert software engineer. Describe what the provided code element does in one or two sentences."},
                    {"role": "user", "content": self._construct_prompt(element)},
                ],
                max_tokens=self.max_tokens,
                temperature=0.3,
            )
        except OpenAIError as e:
            logger.error(f"Error generating description for {element.name}: {e}")
            return None
        content = response.choices[0].message.content if response.choices else None
        return content.strip() if content else None

    def _construct_prompt(self, element: CodeElement) -> str:
        code = element.content
        if len(code) > self.max_input_chars:
            code = code[:self.max_input_chars] + "\n... (truncated)"
        doc = element.doc_comment or "None"
        return f"""
Element Type: {element.type.value}
Name: {element.name}
Language: {element.language.value}
Documentation: {doc}

Code:
{code}

Description:
"""
