"""Chat messages and the page-selection tool offered to the model."""

from aiproxy.models import FetchResult, FetchStatus, TrafficRecord

SELECT_TOOL_NAME = "select_pages_to_inspect"

SELECT_TOOL = {
    "type": "function",
    "function": {
        "name": SELECT_TOOL_NAME,
        "description": "Fetch the text content of visited pages that deserve a closer look.",
        "parameters": {
            "type": "object",
            "properties": {
                "urls": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "URLs copied exactly from the activity list.",
                },
            },
            "required": ["urls"],
        },
    },
}

ANALYST_ROLE = (
    "You are a browsing behavior analyst. You turn web traffic into a short, "
    "factual account of what the user is doing: recurring sites, workflows, "
    "current focus and how it changed since the previous summary."
)

SELECTION_INSTRUCTIONS = (
    "Decide which pages are worth reading to understand the activity. Call "
    "`{tool}` with at most {limit} URLs from the list, or answer without a "
    "tool call if the URLs alone are enough."
)

SUMMARY_INSTRUCTIONS = (
    "Write the updated analysis with three parts: Key Patterns, Current Focus, "
    "Notable Changes. Only describe page content that appears under Page "
    "Content; pages listed as not retrieved must not be guessed at."
)


def format_activity(records: list[TrafficRecord]) -> str:
    lines = []
    for r in records:
        method = f"{r.method} " if r.method else ""
        lines.append(f"- {r.timestamp.isoformat()} {method}{r.url} (host: {r.host})")
    return "\n".join(lines)


def format_previous(previous_summary: str) -> str:
    return previous_summary or "None - this is the first analysis."


def build_selection_messages(
    records: list[TrafficRecord], previous_summary: str, limit: int
) -> list[dict]:
    system = "\n\n".join([
        ANALYST_ROLE,
        SELECTION_INSTRUCTIONS.format(tool=SELECT_TOOL_NAME, limit=limit),
        f"Previous summary:\n{format_previous(previous_summary)}",
    ])
    user = f"New activity ({len(records)} distinct URLs):\n{format_activity(records)}"
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def format_fetched(results: list[FetchResult]) -> str:
    if not results:
        return "No pages were fetched."
    blocks = []
    for res in results:
        if res.status is FetchStatus.OK:
            blocks.append(f"### {res.url}\n{res.text or '(page has no text)'}")
        else:
            blocks.append(f"### {res.url}\nCould not be retrieved ({res.reason}).")
    return "\n\n".join(blocks)


def build_summary_messages(
    records: list[TrafficRecord], fetched: list[FetchResult], previous_summary: str
) -> list[dict]:
    system = "\n\n".join([
        ANALYST_ROLE,
        SUMMARY_INSTRUCTIONS,
        f"Previous summary:\n{format_previous(previous_summary)}",
    ])
    user = (
        f"New activity ({len(records)} distinct URLs):\n{format_activity(records)}\n\n"
        f"Page Content:\n{format_fetched(fetched)}"
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]
