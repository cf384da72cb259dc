from __future__ import annotations

FOOTER = "🔙 Type 'menu' to return to the main menu"


def _canned(title: str, body: str) -> str:
    return f"{title}\n\n{body}\n\n{FOOTER}"


def with_footer(text: str) -> str:
    text = (text or "").rstrip()
    if text.endswith(FOOTER):
        return text
    if not text:
        return FOOTER
    return f"{text}\n\n{FOOTER}"


# External content, non-2xx statuses.
FETCH_NOT_FOUND = _canned(
    "🔍 *Data Not Found*",
    "The requested data is not available on the server.\nPlease contact the administrator to update it.",
)
FETCH_SERVER_PROBLEM = _canned(
    "⚠️ *Server Problem*",
    "The server is having an internal problem.\nPlease try again in a moment.",
)
FETCH_ACCESS_DENIED = _canned(
    "🔒 *Access Denied*",
    "You are not allowed to access this data.\nPlease contact the administrator.",
)


def fetch_server_error(status: int) -> str:
    return _canned(
        f"❌ *Server Error ({status})*",
        "Something went wrong while loading data from the server.\nPlease try again later.",
    )


# External content, transport failures.
FETCH_UNREACHABLE = _canned(
    "🌐 *Server Unreachable*",
    "The external server cannot be reached.\nIt may be down or the address may be wrong.",
)
FETCH_TIMEOUT = _canned(
    "⏰ *Request Timeout*",
    "The server did not answer in time.\nPlease try again later.",
)
FETCH_FAILED = _canned(
    "❌ *Failed To Load Data*",
    "Something went wrong while loading data from the external server.\nPlease try again or contact the administrator.",
)
FETCH_ERROR_PAGE = _canned(
    "🌐 *Server Returned An Error Page*",
    "The server is having trouble or the address is not valid.\nPlease contact the administrator.",
)

UNDER_DEVELOPMENT = (
    "ℹ️ *Under Development*\n\n"
    "This menu is under development.\n"
    "Please try again later or pick another menu."
)

NO_MENU_AVAILABLE = "❌ No menu is available right now.\nPlease contact the administrator to add one."

MAIN_MENU_HEADER = "🤖 *Welcome*\n\nPlease choose a menu below:"
SUBMENU_PROMPT = "Choose a sub menu below:"
SEARCH_HEADER = "🔍 *Search Results:*"

MAIN_MENU_USAGE = (
    "📝 *How to use:*\n"
    "• Type the menu number (example: 1)\n"
    "• Or type a keyword (example: schedule)"
)
SUBMENU_USAGE = "📝 *How to use:*\n• Type the sub menu number"
SEARCH_USAGE = (
    "📝 *How to use:*\n"
    "• Type a menu number to choose it\n"
    "• Or type another keyword to search"
)

GENERIC_APOLOGY = "❌ A system error occurred. Please try again."