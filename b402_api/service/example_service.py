"""
Example paid service
Answers the user's message with an AI completion; replace with your own logic
"""

import structlog

from b402_api.models import (
    RequestContext,
    Task,
    TaskState,
    TaskStatus,
    agent_text_message,
    message_text,
)
from b402_api.service.completion import CompletionProvider

logger = structlog.get_logger()

SYSTEM_PROMPT = (
    "You are a helpful AI assistant. The user paid for this answer with a b402 "
    "micropayment on BNB Chain. Answer clearly and concisely."
)


class ExampleService:
    """Processes one paid request and returns the finished task"""

    def __init__(self, provider: CompletionProvider, system_prompt: str = SYSTEM_PROMPT):
        self.provider = provider
        self.system_prompt = system_prompt

    async def execute(self, context: RequestContext) -> Task:
        text = message_text(context.message)
        if not text:
            raise ValueError("Message contains no text parts")

        logger.info("example_service_processing", task_id=context.task_id, chars=len(text))

        reply = await self.provider.complete(
            [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": text},
            ]
        )

        task = context.current_task.model_copy(deep=True)
        task.status = TaskStatus(
            state=TaskState.COMPLETED,
            message=agent_text_message(reply, task_id=task.id, context_id=task.context_id),
        )
        return task

    async def aclose(self) -> None:
        await self.provider.aclose()
