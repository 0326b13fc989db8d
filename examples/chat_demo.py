"""Minimal demonstration of a streamed two-turn conversation."""

import asyncio

from chat_core.api.service import run_chat


def print_delta(message):
    if message.delta:
        print(message.delta, end="", flush=True)


async def main():
    question = "用一句话介绍一下你自己"
    print("User:", question)
    print("Assistant: ", end="")
    first = await run_chat(question, on_progress=print_delta, timeout_ms=60_000)
    print()

    follow_up = "再用英文说一遍"
    print("User:", follow_up)
    second = await run_chat(follow_up, parent_message_id=first["id"])
    print("Assistant:", second["text"])
    print("Usage:", second["usage"])


if __name__ == "__main__":
    asyncio.run(main())
