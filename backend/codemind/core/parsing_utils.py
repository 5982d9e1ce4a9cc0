import re
from typing import Optional
import logging

logger = logging.getLogger(__name__)

# A fenced block, optionally tagged (```markdown, ```yaml, ```json ...). The tag
# must be followed by a line break so that "```code" text on one line is not
# mistaken for a tag.
_TAGGED_FENCE = re.compile(r"```[ \t]*([\w+.\-]*)[ \t]*\r?\n(.*?)```", re.DOTALL)
# Fallback for fences whose content starts on the same line as the opening marks.
_BARE_FENCE = re.compile(r"```(.*?)```", re.DOTALL)


def extract_structured_block(text: Optional[str], fmt: Optional[str] = None) -> str:
    """
    Pulls the structured payload out of a free-form LLM response.

    If the response contains a fenced code block its trimmed interior is
    returned; when `fmt` is given, a fence tagged with that format name wins
    over earlier untagged or differently tagged fences. Without any fence the
    trimmed response itself is the payload. This never raises: a missing
    fence is the normal case for well-behaved models.

    Args:
        text: The raw response content.
        fmt: Optional preferred fence tag (e.g. "markdown", "yaml").

    Returns:
        The best-effort payload text, possibly empty.
    """
    if not text:
        return ""
    if not isinstance(text, str):
        text = str(text)

    matches = list(_TAGGED_FENCE.finditer(text))
    if matches:
        if fmt:
            wanted = fmt.lower()
            for match in matches:
                if match.group(1).lower() == wanted:
                    return match.group(2).strip()
        return matches[0].group(2).strip()

    bare = _BARE_FENCE.search(text)
    if bare:
        logger.debug("Extracted payload from a fence without a line break after the opening marks.")
        return bare.group(1).strip()

    return text.strip()
