"""Conversation Digest — pure helpers that turn a transcript segment into a
summarization prompt: file-operation tracking, flat serialization, templates.

Invariants:
    - All functions are pure (no IO, no async)
    - File lists are sorted; a file both read and modified appears only as modified
    - serialize_conversation renders every message kind (exhaustive over roles
      and block types)

Design Decisions:
    - Tool names mapped to file-operation categories by a dict, overridable per
      call: the core never guesses from argument shapes beyond a string `path`
    - Summary message is a user message prefixed with SUMMARY_PREFIX so a later
      compaction can recognise and carry the previous summary forward
"""

import json
from dataclasses import dataclass, field

from turnloop.core.messages import TextContent, UserMessage


SUMMARY_PREFIX = "[Context Summary of prior turns]:"

# tool name -> FileOperations attribute
DEFAULT_FILE_TOOLS: dict[str, str] = {
    "read": "read",
    "write": "written",
    "edit": "edited",
}

SUMMARIZATION_SYSTEM_PROMPT = (
    "You are a context summarization assistant. Your task is to read a "
    "conversation between a user and an AI assistant, then produce a "
    "structured summary.\n"
    "Do NOT continue the conversation. Do NOT respond to any questions. "
    "ONLY output the structured summary."
)

SUMMARIZATION_PROMPT = """The messages above are a conversation to summarize. Create a structured context checkpoint summary that another LLM will use to continue the work.

Use this EXACT format:

## Goal
[What is the user trying to accomplish? Can be multiple items if the session covers different tasks.]

## Constraints & Preferences
- [Any constraints, preferences, or requirements mentioned by user]
- [Or "(none)" if none were mentioned]

## Progress
### Done
- [x] [Completed tasks/changes]

### In Progress
- [ ] [Current work]

### Blocked
- [Issues preventing progress, if any]

## Key Decisions
- **[Decision]**: [Brief rationale]

## Next Steps
1. [Ordered list of what should happen next]

## Critical Context
- [Any data, examples, or references needed to continue]
- [Or "(none)" if not applicable]

Keep each section concise. Preserve exact file paths, function names, and error messages."""


# === File operations ==========================================================

@dataclass
class FileOperations:
    read: set[str] = field(default_factory=set)
    written: set[str] = field(default_factory=set)
    edited: set[str] = field(default_factory=set)


def extract_file_ops(
    message, ops: FileOperations,
    file_tools: dict[str, str] | None = None,
) -> None:
    """Record paths touched by recognised tool calls of an assistant message."""
    if message.role != "assistant":
        return
    file_tools = DEFAULT_FILE_TOOLS if file_tools is None else file_tools
    for block in message.content:
        if block.type != "tool-call":
            continue
        category = file_tools.get(block.name)
        path = block.args.get("path")
        if category is None or not isinstance(path, str):
            continue
        getattr(ops, category).add(path)


def compute_file_lists(ops: FileOperations) -> tuple[list[str], list[str]]:
    """Returns (read_only_files, modified_files), both sorted."""
    modified = ops.edited | ops.written
    read_only = sorted(f for f in ops.read if f not in modified)
    return read_only, sorted(modified)


def format_file_operations(read_files: list[str], modified_files: list[str]) -> str:
    """Trailing <read-files>/<modified-files> sections, or "" when both empty."""
    sections = []
    if read_files:
        sections.append("<read-files>\n" + "\n".join(read_files) + "\n</read-files>")
    if modified_files:
        sections.append(
            "<modified-files>\n" + "\n".join(modified_files) + "\n</modified-files>",
        )
    if not sections:
        return ""
    return "\n\n" + "\n\n".join(sections)


# === Serialization ============================================================

def serialize_conversation(messages: list) -> str:
    """Flat role-tagged rendering of a transcript segment."""
    parts: list[str] = []
    for msg in messages:
        match msg.role:
            case "user":
                parts.append(f"[User]: {_user_text(msg)}")
            case "assistant":
                parts.extend(_assistant_parts(msg))
            case "tool":
                parts.append(f"[Tool result]: {_dump_blocks(msg.content)}")
    return "\n\n".join(parts)


def _user_text(msg) -> str:
    if all(b.type == "text" for b in msg.content):
        return "\n".join(b.text for b in msg.content)
    return _dump_blocks(msg.content)


def _assistant_parts(msg) -> list[str]:
    texts, thinking, calls = [], [], []
    for block in msg.content:
        match block.type:
            case "text":
                texts.append(block.text)
            case "thinking":
                thinking.append(block.text)
            case "tool-call":
                args = json.dumps(block.args, ensure_ascii=False)
                calls.append(f"{block.name}({args})")
    parts = []
    if thinking:
        parts.append("[Assistant thinking]: " + "\n".join(thinking))
    if texts:
        parts.append("[Assistant]: " + "\n".join(texts))
    if calls:
        parts.append("[Assistant tool calls]: " + "; ".join(calls))
    return parts


def _dump_blocks(blocks: list) -> str:
    return json.dumps(
        [b.model_dump(mode="json") for b in blocks], ensure_ascii=False,
    )


# === Prompt + summary message =================================================

def build_summary_prompt(conversation_text: str, previous_summary: str | None = None) -> str:
    prompt = f"<conversation>\n{conversation_text}\n</conversation>\n\n"
    if previous_summary:
        prompt += f"<previous-summary>\n{previous_summary}\n</previous-summary>\n\n"
    return prompt + SUMMARIZATION_PROMPT


def build_summary_message(summary: str) -> UserMessage:
    return UserMessage(content=[TextContent(text=f"{SUMMARY_PREFIX}\n{summary}")])


def is_summary_message(message) -> bool:
    if message.role != "user" or not message.content:
        return False
    first = message.content[0]
    return first.type == "text" and first.text.startswith(SUMMARY_PREFIX)
