"""
Assistant message parsing and model-facing rendering.

The model writes tool calls as XML-style tags inside its text, e.g.

    <read_file>
    <path>src/app.py</path>
    </read_file>

parse_assistant_message() is re-run on the accumulated text after every stream
increment. Blocks whose closing tag has not arrived yet are marked partial.
History keeps structured tool_use / tool_result blocks; render_messages()
turns them back into the text form the model reads.
"""

import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from tools import TOOL_USE_NAMES, TOOL_PARAM_NAMES

_TOOL_OPEN_RE = re.compile(r"<(" + "|".join(sorted(TOOL_USE_NAMES)) + r")>")
_PARAM_OPEN_RE = re.compile(r"<(" + "|".join(sorted(TOOL_PARAM_NAMES)) + r")>")
# A tag that is still being streamed, e.g. "<read_fi" at the very end of the text
_DANGLING_TAG_RE = re.compile(r"\s?</?[a-z_]*$")
_THINKING_TAG_RE = re.compile(r"</?thinking>\s?")


@dataclass
class TextContent:
    content: str
    partial: bool = False
    type: str = "text"


@dataclass
class ToolUse:
    name: str
    params: Dict[str, str] = field(default_factory=dict)
    partial: bool = False
    type: str = "tool_use"


AssistantBlock = Union[TextContent, ToolUse]


def _clean_param(name: str, value: str) -> str:
    if name == "content":
        # Keep file content exact apart from the newline after/before the tags
        if value.startswith("\n"):
            value = value[1:]
        if value.endswith("\n"):
            value = value[:-1]
        return value
    return value.strip()


def _parse_params(tool_name: str, body: str, closed: bool) -> Dict[str, str]:
    params: Dict[str, str] = {}
    pos = 0
    while True:
        m = _PARAM_OPEN_RE.search(body, pos)
        if not m:
            break
        name = m.group(1)
        close_tag = f"</{name}>"
        end = body.find(close_tag, m.end())
        if end == -1:
            # Still streaming this value
            value = _DANGLING_TAG_RE.sub("", body[m.end():]) if not closed else body[m.end():]
            params[name] = _clean_param(name, value)
            break
        # Tag-like text inside file content must not overwrite a real parameter
        params.setdefault(name, _clean_param(name, body[m.end():end]))
        pos = end + len(close_tag)

    # File content may itself contain "</content>"; take everything up to the last one
    if tool_name == "write_to_file" and closed and "<content>" in body:
        start = body.find("<content>") + len("<content>")
        end = body.rfind("</content>")
        if end > start:
            params["content"] = _clean_param("content", body[start:end])
    return params


def _append_text(blocks: List[AssistantBlock], text: str, partial: bool) -> None:
    text = _THINKING_TAG_RE.sub("", text)
    if partial:
        text = _DANGLING_TAG_RE.sub("", text)
    text = text.strip()
    if text:
        blocks.append(TextContent(content=text, partial=partial))


def parse_assistant_message(text: str) -> List[AssistantBlock]:
    """Split accumulated assistant text into ordered text and tool_use blocks.

    The trailing block is partial while its end has not been seen. Callers
    mark everything complete once the stream ends (see `finalize_blocks`).
    """
    blocks: List[AssistantBlock] = []
    pos = 0
    while pos < len(text):
        m = _TOOL_OPEN_RE.search(text, pos)
        if not m:
            _append_text(blocks, text[pos:], partial=True)
            break
        _append_text(blocks, text[pos:m.start()], partial=False)

        name = m.group(1)
        close_tag = f"</{name}>"
        end = text.find(close_tag, m.end())
        if end == -1:
            blocks.append(ToolUse(name=name, params=_parse_params(name, text[m.end():], closed=False),
                                  partial=True))
            break
        blocks.append(ToolUse(name=name, params=_parse_params(name, text[m.end():end], closed=True)))
        pos = end + len(close_tag)
    return blocks


def finalize_blocks(blocks: List[AssistantBlock]) -> List[AssistantBlock]:
    """Mark all blocks complete; called when the stream has ended."""
    for block in blocks:
        block.partial = False
    return blocks


# ------------------------------------------------------------------
# Delta presentation
# ------------------------------------------------------------------

@dataclass
class Presentation:
    """One block to show. `index` is stable across updates of the same block."""
    index: int
    block: AssistantBlock


class StreamPresenter:
    """Tracks what has been shown so each parse only yields the delta.

    Completed blocks are presented exactly once. The trailing partial block is
    presented again only when its content changed since the last parse.
    """

    def __init__(self):
        self._completed = 0
        self._last_partial: Optional[AssistantBlock] = None

    def update(self, blocks: List[AssistantBlock]) -> List[Presentation]:
        out: List[Presentation] = []
        for i in range(self._completed, len(blocks)):
            block = blocks[i]
            if block.partial:
                if block != self._last_partial:
                    out.append(Presentation(i, block))
                    self._last_partial = block
                break
            out.append(Presentation(i, block))
            self._completed = i + 1
            self._last_partial = None
        return out

    @property
    def presented_count(self) -> int:
        return self._completed

    def reset(self) -> None:
        self._completed = 0
        self._last_partial = None


# ------------------------------------------------------------------
# History <-> model text
# ------------------------------------------------------------------

def new_tool_use_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:24]}"


def to_history_content(blocks: List[AssistantBlock]) -> List[Dict[str, Any]]:
    """Structured assistant content for history. Each tool use gets an id."""
    content: List[Dict[str, Any]] = []
    for block in blocks:
        if isinstance(block, TextContent):
            content.append({"type": "text", "text": block.content})
        else:
            content.append({
                "type": "tool_use",
                "id": new_tool_use_id(),
                "name": block.name,
                "input": dict(block.params),
            })
    return content


def format_tool_call(name: str, params: Dict[str, Any]) -> str:
    lines = [f"<{name}>"]
    for key, value in params.items():
        lines.append(f"<{key}>{value}</{key}>" if "\n" not in str(value)
                     else f"<{key}>\n{value}\n</{key}>")
    lines.append(f"</{name}>")
    return "\n".join(lines)


def tool_description(name: str, params: Dict[str, Any]) -> str:
    """Short label used in result headers, e.g. "[read_file for 'a.py']"."""
    if name == "execute_command":
        return f"[{name} for '{params.get('command', '')}']"
    if name == "search_files":
        return f"[{name} for '{params.get('regex', '')}']"
    if name == "ask_followup_question":
        return f"[{name} for '{params.get('question', '')}']"
    if name == "attempt_completion":
        return f"[{name}]"
    if params.get("path"):
        return f"[{name} for '{params['path']}']"
    return f"[{name}]"


def _result_text(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return [dict(b) for b in content or []]


def render_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Render history into text/image-only messages for the provider.

    tool_use blocks become the XML the model originally wrote; tool_result
    blocks become text headed by the tool description. Bookkeeping keys such
    as timestamps are dropped.
    """
    calls: Dict[str, Dict[str, Any]] = {}
    rendered: List[Dict[str, Any]] = []
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, str):
            rendered.append({"role": msg["role"], "content": [{"type": "text", "text": content}]})
            continue
        out: List[Dict[str, Any]] = []
        for block in content or []:
            btype = block.get("type")
            if btype == "tool_use":
                calls[block.get("id", "")] = block
                out.append({"type": "text", "text": format_tool_call(block["name"], block.get("input", {}))})
            elif btype == "tool_result":
                call = calls.get(block.get("tool_use_id", ""))
                label = tool_description(call["name"], call.get("input", {})) if call else "[tool]"
                out.append({"type": "text", "text": f"{label} Result:"})
                out.extend(_result_text(block.get("content")))
            elif btype in ("text", "image"):
                out.append(dict(block))
        rendered.append({"role": msg["role"], "content": out})
    return rendered
