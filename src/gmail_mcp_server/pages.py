"""Minimal HTML pages for the browser-facing OAuth routes."""

from html import escape

_PAGE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
body {{ font-family: sans-serif; max-width: 40em; margin: 3em auto; color: #222; }}
code {{ background: #f2f2f2; padding: 0.1em 0.3em; }}
.error {{ color: #b00020; }}
</style>
</head>
<body>
<h1>{title}</h1>
{body}
</body>
</html>
"""


def render_page(title: str, body_html: str) -> str:
    return _PAGE.format(title=escape(title), body=body_html)


def index_page(authenticated: bool, login_route: str, routes: list[tuple[str, str, str]]) -> str:
    """Landing page; ``routes`` is a list of (method, path, description)."""
    if authenticated:
        status = "<p>Gmail access is authorized.</p>"
    else:
        status = f'<p>Not authorized yet. <a href="{escape(login_route)}">Log in with Google</a>.</p>'
    items = "".join(
        f"<li><code>{escape(method)} {escape(path)}</code> {escape(description)}</li>"
        for method, path, description in routes
    )
    return render_page("Gmail MCP Server", f"{status}<p>Routes:</p><ul>{items}</ul>")


def success_page() -> str:
    return render_page(
        "Authentication successful",
        "<p>Gmail access has been authorized. You can close this window.</p>",
    )


def error_page(message: str, login_route: str) -> str:
    return render_page(
        "Authentication failed",
        f'<p class="error">{escape(message)}</p>'
        f'<p><a href="{escape(login_route)}">Try again</a></p>',
    )
