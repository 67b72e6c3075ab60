from __future__ import annotations

import asyncio
import json
from pathlib import Path

import streamlit as st
from loguru import logger

from roundtable.config import ConversationConfig
from roundtable.session import ConversationSession


ROOT = Path(__file__).resolve().parent
CONFIG_DIR = ROOT / "configs"
RESULTS_DIR = ROOT / "chat_results"

AVATARS = ["🟦", "🟩", "🟧", "🟪", "🟥", "🟨"]


def list_configs() -> list[str]:
    if not CONFIG_DIR.exists():
        return []
    return sorted([p.name for p in CONFIG_DIR.glob("*.json")])


def parse_config_json(txt: str) -> dict | None:
    try:
        obj = json.loads(txt or "")
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict) or not obj.get("agents") and not obj.get("participants"):
        return None
    return obj


def avatar_for(name: str, names: list[str]) -> str:
    if name in names:
        return AVATARS[names.index(name) % len(AVATARS)]
    return "💬"


def render_conversation(result: dict) -> None:
    speakers: list[str] = []
    for m in result.get("conversation", []):
        if m["sender"] not in speakers and not m["is_system"]:
            speakers.append(m["sender"])
    for m in result.get("conversation", []):
        if m["is_system"]:
            st.caption(f"⚙️ {m['text']}")
            continue
        if m["is_backchannel"]:
            st.caption(f"{m['sender']}: _{m['text']}_")
            continue
        flags = []
        if m["impromptu_phase"]:
            flags.append("impromptu")
        if m["is_interrupted"]:
            flags.append("interrupted")
        if m["is_proactive"]:
            flags.append("cut-in")
        if m["needs_approval"]:
            flags.append("awaiting approval")
        party = f" · {m['party']}" if m.get("party") else ""
        with st.chat_message("user", avatar=avatar_for(m["sender"], speakers)):
            st.markdown(
                f"**{m['sender']}** → {m['recipient']}{party}\n\n{m['text']}\n\n"
                f"<span style='color:gray;font-size:smaller'>{' · '.join(flags)} {m['timestamp']}</span>",
                unsafe_allow_html=True,
            )


st.set_page_config(page_title="AI Roundtable Simulator", page_icon="🤖", layout="wide")

st.sidebar.title("AI Roundtable – Controls")
files = list_configs()
source = st.sidebar.selectbox("Config source", ["Existing", "Custom JSON"], index=0 if files else 1)
if source == "Existing" and files:
    config_file = st.sidebar.selectbox("Config", files, index=0)
    config_data = json.loads((CONFIG_DIR / config_file).read_text(encoding="utf-8"))
else:
    config_data = parse_config_json(
        st.sidebar.text_area("Config JSON", placeholder='{"topic": "...", "agents": [{"name": "Ana"}]}', height=220)
    )

max_turns = st.sidebar.slider("Max turns", min_value=4, max_value=30, value=int((config_data or {}).get("max_turns", 10)))
mode = st.sidebar.radio("Conversation mode", ["human-control", "autonomous", "reactive"], index=0)
seed = st.sidebar.number_input("Seed", min_value=0, value=int((config_data or {}).get("seed") or 0), step=1)
start_btn = st.sidebar.button("Start Conversation", type="primary")
reset_btn = st.sidebar.button("Reset")

st.title("Live AI Roundtable")
status_text = st.empty()
chat_area = st.container()
control_area = st.container()

if reset_btn:
    st.session_state.pop("session", None)
    st.session_state.pop("result", None)

if start_btn:
    if not config_data:
        st.sidebar.error("Provide a valid config with at least one agent or participant.")
        st.stop()
    data = dict(config_data)
    data.update({"max_turns": max_turns, "conversation_mode": mode, "seed": int(seed)})
    session = ConversationSession()
    with st.spinner("Running conversation..."):
        st.session_state["result"] = asyncio.run(session.start_conversation(ConversationConfig.from_dict(data)))
    st.session_state["session"] = session
    logger.info(f"ui_conversation_started | topic={data.get('topic')!r} mode={mode}")

session: ConversationSession | None = st.session_state.get("session")
result: dict | None = st.session_state.get("result")

if session is None or result is None:
    st.info("Pick a config and click Start Conversation")
    st.stop()

with chat_area:
    render_conversation(result)

status_text.info(f"{result['status']} | {result['turn_index']} / {result['max_turns']} turns | phase: {result['phase']}")

with control_area:
    new_mode = st.selectbox(
        "Switch mode",
        ["human-control", "autonomous", "reactive"],
        index=["human-control", "autonomous", "reactive"].index(result["conversation_mode"]),
    )
    if new_mode != result["conversation_mode"]:
        st.session_state["result"] = asyncio.run(session.set_conversation_mode(new_mode, resume=True))
        st.rerun()
    if result["status"] == "awaiting_approval" and result["pending"]:
        pending = result["pending"]
        st.subheader("Impromptu phase request")
        st.write(f"**{pending['derailer']}** wants a {pending['mode']} phase for {pending['turns']} turns.")
        edited = st.text_area("Draft", value=pending["text"])
        regen_mode = st.selectbox("Regenerate as", ["keep", "drift", "extend", "question", "emotional", "random"])
        c1, c2, c3 = st.columns(3)
        if c1.button("Approve", type="primary"):
            text = edited if edited.strip() != pending["text"] else None
            st.session_state["result"] = asyncio.run(session.approve_impromptu(edited_text=text))
            st.rerun()
        if c2.button("Reject"):
            st.session_state["result"] = asyncio.run(session.reject_impromptu())
            st.rerun()
        if c3.button("Regenerate"):
            st.session_state["result"] = asyncio.run(
                session.regenerate_pending_message(None if regen_mode == "keep" else regen_mode)
            )
            st.rerun()
    elif result["status"] == "awaiting_human":
        text = st.chat_input(f"Speak as {result['awaiting_human']}")
        if text:
            st.session_state["result"] = asyncio.run(session.submit_human_message(text))
            st.rerun()
    elif result["status"] == "completed":
        RESULTS_DIR.mkdir(parents=True, exist_ok=True)
        out_name = f"roundtable__{seed}.json"
        (RESULTS_DIR / out_name).write_text(json.dumps(result, ensure_ascii=False, indent=2), encoding="utf-8")
        st.success(f"Conversation completed | saved {out_name}")
        st.download_button("Download transcript", json.dumps(result, ensure_ascii=False, indent=2), file_name=out_name)
    else:
        if st.button("Continue"):
            st.session_state["result"] = asyncio.run(session.continue_conversation())
            st.rerun()
