"""
Render a session's messages to a standalone HTML page.
"""

import html
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from agent_rpc.core.session_tree import message_text

_STYLE = """
body { font-family: -apple-system, "Segoe UI", sans-serif; max-width: 860px; margin: 2em auto; color: #222; }
h1 { font-size: 1.3em; }
.meta { color: #777; font-size: 0.85em; margin-bottom: 2em; }
.msg { border-radius: 6px; padding: 0.8em 1em; margin: 0.8em 0; white-space: pre-wrap; }
.user { background: #eef4ff; }
.assistant { background: #f5f5f5; }
.tool { background: #fff8e6; font-family: monospace; font-size: 0.9em; }
.role { font-weight: bold; font-size: 0.8em; text-transform: uppercase; color: #555; }
"""


def render_html(messages: List[Dict[str, Any]], title: str, meta: Optional[Dict[str, Any]] = None) -> str:
    rows = []
    for message in messages:
        role = message.get("role", "assistant")
        css = role if role in ("user", "assistant") else "tool"
        rows.append(
            f'<div class="msg {css}"><div class="role">{html.escape(role)}</div>'
            f'{html.escape(message_text(message))}</div>'
        )

    meta_line = " | ".join(f"{html.escape(str(k))}: {html.escape(str(v))}" for k, v in (meta or {}).items())
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n<meta charset=\"utf-8\">\n"
        f"<title>{html.escape(title)}</title>\n<style>{_STYLE}</style>\n</head>\n<body>\n"
        f"<h1>{html.escape(title)}</h1>\n<div class=\"meta\">{meta_line}</div>\n"
        + "\n".join(rows)
        + "\n</body>\n</html>\n"
    )


def export_session_html(messages: List[Dict[str, Any]], session_id: str, output_path: Optional[str] = None,
                        cwd: Optional[str] = None, meta: Optional[Dict[str, Any]] = None) -> str:
    """Write the HTML export and return its absolute path."""
    if not output_path:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        output_path = os.path.join(cwd or os.getcwd(), f"session-{session_id[:8]}-{stamp}.html")
    output_path = os.path.abspath(output_path)

    parent = os.path.dirname(output_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(output_path, 'w', encoding='utf-8') as f:
        f.write(render_html(messages, f"Session {session_id}", meta))
    return output_path
