"""Seeds the sandbox with a pre-built full-stack template."""

import asyncio

from genstack.generation.capabilities.base import Capability, CapabilityServices
from genstack.generation.models import CapabilityContext, CapabilityResult, InputMode
from genstack.utils.errors import PathValidationError
from genstack.utils.logging import get_logger

logger = get_logger(__name__)


class TemplateCapability(Capability):
    """
    Copies ``templates/<name>`` into the sandbox, announces every file to live
    subscribers and persists it so the session can be restored later.
    """

    name = "Template"

    def __init__(self, services: CapabilityServices, template_name: str):
        super().__init__(services)
        self.template_name = template_name

    def can_skip(self, context: CapabilityContext) -> bool:
        return context.config.input_mode != InputMode.TEMPLATE

    async def execute(self, context: CapabilityContext) -> CapabilityResult:
        self.validate_context(context)
        session_id = context.session_id
        filesystem = self.services.filesystem

        await self.emit_status(context, "Copying full-stack template to workspace...")

        try:
            files = await asyncio.to_thread(filesystem.copy_template, self.template_name, session_id)
        except (OSError, PathValidationError) as e:
            message = f"Failed to copy template '{self.template_name}': {e}"
            logger.error(message, extra={"session_id": session_id})
            return CapabilityResult.failure(message)

        for path in files:
            try:
                content = filesystem.read_file(session_id, path)
            except UnicodeDecodeError:
                # Binary assets stay on disk only
                continue
            await self.publish_file(context, path, content)

        logger.info(
            "Template files published",
            extra={"session_id": session_id, "template": self.template_name, "file_count": len(files)},
        )
        await self.emit_message(
            context,
            "assistant",
            f"Started with the {self.template_name} template ({len(files)} files copied). "
            "Now customizing it to your requirements...",
        )
        return CapabilityResult(success=True, context_updates={"template_files": files})
