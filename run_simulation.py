from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict

from loguru import logger

from roundtable.config import ConversationConfig
from roundtable.messages import Message
from roundtable.session import ConversationSession


ROOT = Path(__file__).resolve().parent
RESULTS_DIR = ROOT / "chat_results"


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run a multi-persona roundtable conversation")
    p.add_argument("--config", type=str, default=str(ROOT / "configs" / "roundtable_demo.json"), help="Path to a conversation config JSON")
    p.add_argument("--max-turns", type=int, help="Override the config's max turns")
    p.add_argument("--mode", type=str, choices=["human-control", "autonomous", "reactive"], help="Override the conversation mode")
    p.add_argument("--seed", type=int, help="Seed for reproducible turn-taking")
    p.add_argument("--results-dir", type=str, default=str(RESULTS_DIR), help="Where to write the transcript JSON")
    p.add_argument("--quiet", action="store_true", help="Do not echo messages as they arrive")
    return p.parse_args()


def load_json_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def echo(message: Message) -> None:
    if message.is_system:
        print(f"  -- {message.text}")
    elif message.is_backchannel:
        print(f"     ({message.sender}: {message.text})")
    else:
        tag = " [impromptu]" if message.impromptu_phase else ""
        print(f"{message.sender} -> {message.recipient}{tag}: {message.text}")


async def resolve_pending(session: ConversationSession, result: Dict[str, Any]) -> Dict[str, Any]:
    pending = result["pending"]
    print(
        f"\n{pending['derailer']} wants to start a {pending['mode']} impromptu phase "
        f"for {pending['turns']} turns:\n  \"{pending['text']}\""
    )
    while True:
        choice = input("[a]pprove / [r]eject / [e]dit / re[g]enerate > ").strip().lower()
        if choice in ("a", "approve"):
            return await session.approve_impromptu()
        if choice in ("r", "reject"):
            return await session.reject_impromptu()
        if choice in ("e", "edit"):
            text = input("New text: ").strip()
            if text:
                return await session.approve_impromptu(edited_text=text)
        elif choice in ("g", "regenerate"):
            mode = input("Mode (drift/extend/question/emotional/random, blank keeps): ").strip() or None
            result = await session.regenerate_pending_message(mode)
            print(f"  \"{result['pending']['text']}\"")


async def main() -> None:
    args = parse_args()
    logger.remove()
    logger.add(sys.stdout, level=os.getenv("LOG_LEVEL", "INFO"), format="{time:HH:mm:ss} | {level} | {message}")

    data = load_json_file(args.config)
    if args.max_turns is not None:
        data["max_turns"] = args.max_turns
    if args.mode:
        data["conversation_mode"] = args.mode
    if args.seed is not None:
        data["seed"] = args.seed
    config = ConversationConfig.from_dict(data)

    session = ConversationSession(on_message=None if args.quiet else echo)
    result = await session.start_conversation(config)
    while result["status"] != "completed":
        if result["status"] == "awaiting_approval":
            result = await resolve_pending(session, result)
        elif result["status"] == "awaiting_human":
            text = input(f"{result['awaiting_human']} (you) > ").strip()
            result = await session.submit_human_message(text or "I agree, please go on.")
        else:
            result = await session.continue_conversation()

    out_dir = Path(args.results_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_name = f"{Path(args.config).stem}__{config.seed if config.seed is not None else 'run'}.json"
    (out_dir / out_name).write_text(json.dumps(result, ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info(f"transcript_saved | path={out_dir / out_name}")
    print(json.dumps(result, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
