"""Answer generation from retrieved knowledge using the OpenAI chat API."""

from collections.abc import AsyncIterator

from ..core.llm import LLM
from ..schemas.resolution import Completion, GenerationContext

SYSTEM_PROMPT = """You are a helpful customer support assistant. Answer customer questions accurately and professionally using the provided context.

Rules:
- Only answer from the provided context. If it does not contain enough information, say so honestly.
- Be concise but thorough. Use bullet points or numbered lists for multi-step answers.
- Keep a friendly, professional tone.
- If the question is unclear, ask for clarification.
- Never make up information. When the context falls short, recommend contacting a human agent.
- Use the details from the context without copying it verbatim."""


def _format_context(context: GenerationContext) -> str:
    """Format retrieved chunks as numbered sources with their relevance."""
    return "\n\n---\n\n".join(
        f"[Source {i + 1}] (relevance: {chunk.score * 100:.1f}%)\n{chunk.text}"
        for i, chunk in enumerate(context.chunks)
    )


def build_messages(context: GenerationContext) -> list[dict[str, str]]:
    """Build the chat messages: system prompt with context, history, then the query."""
    system_prompt = SYSTEM_PROMPT
    if context.system_prompt_prefix:
        system_prompt = f"{context.system_prompt_prefix}\n\n{system_prompt}"

    messages = [
        {
            "role": "system",
            "content": f"{system_prompt}\n\n## Retrieved Context\n\n{_format_context(context)}",
        }
    ]
    messages.extend({"role": str(m.role), "content": m.content} for m in context.history)
    messages.append({"role": "user", "content": context.query})
    return messages


async def generate_completion(context: GenerationContext) -> Completion:
    """Generate a complete answer for the query in ``context``."""
    llm = LLM(model=context.model)
    content = await llm.chat(build_messages(context))
    usage = llm.last_usage
    return Completion(
        content=content,
        tokens_used=usage.total if usage else 0,
        finish_reason=llm.last_finish_reason,
        model=usage.model if usage else llm.model,
    )


async def generate_completion_stream(context: GenerationContext) -> AsyncIterator[str | Completion]:
    """Stream the answer for the query in ``context`` as text deltas.

    The last item is a ``Completion`` with the full text and token usage.
    """
    llm = LLM(model=context.model)
    parts: list[str] = []
    async for delta in llm.stream(build_messages(context)):
        parts.append(delta)
        yield delta

    usage = llm.last_usage
    yield Completion(
        content="".join(parts),
        tokens_used=usage.total if usage else 0,
        finish_reason=llm.last_finish_reason,
        model=usage.model if usage else llm.model,
    )
