"""Chapter-style highlights for video transcripts."""

from typing import Dict, Any, List, Optional

from newsweave.core.errors import MalformedResponseError
from newsweave.core.logging import get_logger
from newsweave.core.settings import get_settings
from newsweave.llm.provider import CompletionProvider, extract_json

logger = get_logger(__name__)

MAX_TRANSCRIPT_CHARS = 15000
MAX_HIGHLIGHTS = 8


def transcript_text(transcript: Any) -> str:
    """Accept a plain string or a list of {start, text} segments."""
    if isinstance(transcript, str):
        return transcript
    if isinstance(transcript, list):
        lines = []
        for segment in transcript:
            if isinstance(segment, dict) and segment.get('text'):
                start = segment.get('start')
                prefix = f"[{int(float(start))}s] " if start is not None else ""
                lines.append(prefix + str(segment['text']))
        return "\n".join(lines)
    return ""


async def generate_highlights(provider: CompletionProvider, title: str, transcript: Any) -> Optional[List[Dict[str, Any]]]:
    """
    Ask the model for the key moments of a video.

    Returns:
        List of {'time', 'title', 'title_localized'} or None if unusable
    """
    text = transcript_text(transcript)
    if not text.strip():
        return None

    language = get_settings().target_language
    prompt = (
        f'Identify up to {MAX_HIGHLIGHTS} key moments of the video "{title}". '
        'Respond with ONLY a JSON object {"highlights": [{"time": "<seconds or mm:ss>", '
        f'"title": "...", "title_localized": "..."}}]}} where title_localized is in {language}.\n\n'
        f"Transcript:\n{text[:MAX_TRANSCRIPT_CHARS]}"
    )
    try:
        data = extract_json(await provider.complete(prompt, max_tokens=1500))
    except MalformedResponseError as e:
        logger.warning(f"Highlights output unusable: {e}")
        return None

    highlights = [
        {'time': str(h.get('time', '')), 'title': str(h['title']), 'title_localized': str(h.get('title_localized') or '')}
        for h in data.get('highlights') or []
        if isinstance(h, dict) and h.get('title')
    ]
    return highlights[:MAX_HIGHLIGHTS] or None
