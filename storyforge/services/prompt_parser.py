"""Expand prompt templates into the final message list sent to a model.

Templates are role-tagged messages containing ``{{variable}}`` or
``{{variable:argument}}`` placeholders. Each placeholder is resolved
independently, in template order, against a :class:`PromptContext` built for
this parse only.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

from .interfaces import PromptCatalog
from .prompt_context import ContextBuilder, ParsedPrompt, PromptContext, PromptParserConfig
from .records import MESSAGE_ROLES, PromptMessage, PromptRecord
from .resolvers import ResolutionError, ResolverRegistry

LOGGER = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(?P<name>[A-Za-z_][\w.]*)\s*(?::(?P<arg>[^{}]*?))?\s*\}\}")


class PromptParseError(RuntimeError):
    """Raised by callers that need a parse failure as an exception."""


class PromptParser:
    def __init__(self, context_builder: ContextBuilder, prompts: PromptCatalog, registry: ResolverRegistry):
        self.context_builder = context_builder
        self.prompts = prompts
        self.registry = registry

    async def parse(self, config: PromptParserConfig, prompt: Optional[PromptRecord] = None) -> ParsedPrompt:
        """Resolve every placeholder of the prompt named by ``config.prompt_id``.

        Resolution problems come back as ``ParsedPrompt.error`` with no
        messages. Failing to load story data raises
        :class:`~storyforge.services.prompt_context.ContextBuildError`.
        """

        if prompt is None:
            if not config.prompt_id:
                return ParsedPrompt.failure("No prompt was selected.")
            prompt = await self.prompts.get_prompt_by_id(config.prompt_id)
            if prompt is None:
                return ParsedPrompt.failure(f"Prompt '{config.prompt_id}' was not found.")
        if not prompt.messages:
            return ParsedPrompt.failure(f"Prompt '{prompt.name}' has no messages.")

        context = await self.context_builder.build_context(config)

        messages: List[PromptMessage] = []
        for template in prompt.messages:
            if template.role not in MESSAGE_ROLES:
                return ParsedPrompt.failure(f"Unsupported message role '{template.role}'.")
            try:
                content = await self.expand(template.content, context)
            except ResolutionError as exc:
                LOGGER.warning("Prompt %s failed to parse: %s", prompt.id, exc)
                return ParsedPrompt.failure(str(exc))
            messages.append(PromptMessage(role=template.role, content=content))

        return ParsedPrompt(messages=messages)

    async def expand(self, text: str, context: PromptContext) -> str:
        """Substitute the placeholders of one message body."""

        pieces: List[str] = []
        position = 0
        for match in PLACEHOLDER_PATTERN.finditer(text):
            pieces.append(text[position:match.start()])
            pieces.append(await self._resolve(match.group("name"), match.group("arg"), context))
            position = match.end()
        pieces.append(text[position:])
        return "".join(pieces)

    async def _resolve(self, name: str, arg: Optional[str], context: PromptContext) -> str:
        resolver = self.registry.get(name)
        if resolver is None:
            raise ResolutionError(f"Unknown variable '{{{{{name}}}}}'.")
        try:
            value = await resolver.resolve(context, arg)
        except ResolutionError:
            raise
        except Exception as exc:
            raise ResolutionError(f"Failed to resolve '{{{{{name}}}}}': {exc}") from exc
        return value if value is not None else ""
