"""
Slides and Topics Parsing for Manus task results
"""

import re
import json
import logging
from typing import Dict, Any, List, Optional, Callable
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

VALID_LAYOUTS = ('title_slide', 'content', 'two_column', 'image', 'quote')
MAX_SLIDES = 50
MAX_TITLE_LENGTH = 200
MAX_CONTENT_LENGTH = 5000
MAX_NOTES_LENGTH = 2000
TOPICS_COUNT = 10

FALLBACK_TOPICS = [
    "Introduction",
    "Background",
    "Key Concepts",
    "Key Features",
    "Use Cases",
    "Benefits",
    "Challenges",
    "Best Practices",
    "Future Trends",
    "Summary",
]

_HEX_COLOR = re.compile(r'^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$')
_JSON_STRING_ARRAY = re.compile(r'\[\s*"[^"]+"\s*(?:,\s*"[^"]+"\s*)*\]')
_FENCED_JSON = re.compile(r'```json\s*(\[[\s\S]*?\])\s*```')
_FENCED_OBJECT = re.compile(r'```(?:json|JSON)?\s*(\{.*?\})\s*```', re.DOTALL)
_LIST_PREFIX = re.compile(r'^[\d.\-*\s]+')


class SlidesParseError(Exception):
    """Raised when a task result does not contain usable slides."""
    pass


def fetch_json(url: str, timeout: float = 15.0) -> Any:
    """Download a JSON attachment."""
    try:
        response = httpx.get(url, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except (httpx.HTTPError, ValueError) as e:
        raise SlidesParseError(f"Failed to fetch JSON: {e}") from e


def _is_json_attachment(attachment: Dict[str, Any]) -> bool:
    return (
        attachment.get('type') == 'json'
        or attachment.get('content_type') == 'application/json'
        or str(attachment.get('url', '')).endswith('.json')
    )


def _find_slides_data(payload: Dict[str, Any], fetcher: Callable[[str], Any]) -> Optional[List[Any]]:
    for attachment in payload.get('attachments') or []:
        if not isinstance(attachment, dict) or not _is_json_attachment(attachment):
            continue
        data = None
        if attachment.get('url'):
            data = fetcher(attachment['url'])
        elif attachment.get('content'):
            content = attachment['content']
            try:
                data = json.loads(content) if isinstance(content, str) else content
            except ValueError as e:
                raise SlidesParseError(f"Invalid JSON attachment: {e}") from e
        if isinstance(data, dict) and data.get('slides'):
            return data['slides']

    if payload.get('slides'):
        return payload['slides']

    result = payload.get('result')
    if isinstance(result, dict) and result.get('slides'):
        return result['slides']

    return None


def _clean_optional(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_slide(slide: Any, index: int) -> Dict[str, Any]:
    """Normalize one raw slide into a row ready for insertion."""
    if not isinstance(slide, dict):
        raise SlidesParseError(f"Slide {index} is not an object")
    title = slide.get('title')
    content = slide.get('content')
    if not isinstance(title, str) or not title.strip():
        raise SlidesParseError(f"Slide {index} is missing a valid title")
    if not isinstance(content, str) or not content.strip():
        raise SlidesParseError(f"Slide {index} is missing valid content")

    parsed = {
        'title': title.strip(),
        'content': content.strip(),
        'layout': slide.get('layout') if slide.get('layout') in VALID_LAYOUTS else 'content',
        'order_index': index,
    }
    for key in ('speaker_notes', 'background_color', 'background_image'):
        value = _clean_optional(slide.get(key))
        if value is not None:
            parsed[key] = value
    return parsed


def validate_slides(slides: List[Dict[str, Any]]) -> None:
    if not slides:
        raise SlidesParseError("Presentation must have at least 1 slide")
    if len(slides) > MAX_SLIDES:
        raise SlidesParseError(f"Presentation cannot have more than {MAX_SLIDES} slides")

    for index, slide in enumerate(slides):
        if len(slide['title']) > MAX_TITLE_LENGTH:
            raise SlidesParseError(f"Slide {index} title exceeds maximum length of {MAX_TITLE_LENGTH} characters")
        if len(slide['content']) > MAX_CONTENT_LENGTH:
            raise SlidesParseError(f"Slide {index} content exceeds maximum length of {MAX_CONTENT_LENGTH} characters")
        if len(slide.get('speaker_notes') or '') > MAX_NOTES_LENGTH:
            raise SlidesParseError(f"Slide {index} speaker notes exceed maximum length of {MAX_NOTES_LENGTH} characters")
        color = slide.get('background_color')
        if color and not _HEX_COLOR.match(color):
            raise SlidesParseError(f"Slide {index} has invalid background_color format. Expected hex color (e.g., #FF5733)")
        image = slide.get('background_image')
        if image:
            parts = urlparse(image)
            if not (parts.scheme and parts.netloc):
                raise SlidesParseError(f"Slide {index} has invalid background_image URL format")


def parse_slides(payload: Dict[str, Any], fetcher: Callable[[str], Any] = fetch_json) -> List[Dict[str, Any]]:
    """Extract, normalize and validate the slides of a finished task."""
    raw_slides = _find_slides_data(payload, fetcher)
    if not raw_slides:
        raise SlidesParseError("No slides data found in task result")
    if not isinstance(raw_slides, list):
        raise SlidesParseError("Slides data must be a list")

    slides = [parse_slide(slide, index) for index, slide in enumerate(raw_slides)]
    validate_slides(slides)
    return slides


def parse_json_object(text: str) -> Dict[str, Any]:
    """Parse a JSON object out of model output.

    Tries the raw text, then a fenced ```json block, then the outermost
    braces.
    """
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass

    block = _FENCED_OBJECT.search(text)
    if block:
        try:
            parsed = json.loads(block.group(1))
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass

    start, end = text.find('{'), text.rfind('}')
    if start != -1 and end > start:
        try:
            parsed = json.loads(text[start:end + 1])
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass

    raise SlidesParseError("Model output did not contain a JSON object")


def extract_topics(output: Any) -> Optional[List[str]]:
    """Pull a list of topic strings out of free-form task output."""
    if isinstance(output, list):
        return [item for item in output if isinstance(item, str)]

    if isinstance(output, dict):
        topics = output.get('topics')
        if isinstance(topics, list):
            return [item for item in topics if isinstance(item, str)]
        return None

    if not isinstance(output, str):
        return None

    try:
        parsed = json.loads(output)
        if isinstance(parsed, list):
            return [item for item in parsed if isinstance(item, str)]
        if isinstance(parsed, dict):
            return extract_topics(parsed)
    except ValueError:
        pass

    for pattern in (_FENCED_JSON, _JSON_STRING_ARRAY):
        match = pattern.search(output)
        if match:
            try:
                parsed = json.loads(match.group(1) if match.groups() else match.group(0))
            except ValueError:
                continue
            if isinstance(parsed, list):
                return [item for item in parsed if isinstance(item, str)]

    lines = [_LIST_PREFIX.sub('', line).strip() for line in output.splitlines()]
    lines = [line for line in lines if 0 < len(line) <= 100]
    return lines or None


def normalize_topics(output: Any) -> List[str]:
    """Exactly TOPICS_COUNT topics, or the fallback outline."""
    topics = extract_topics(output)
    if not topics or len(topics) != TOPICS_COUNT:
        logger.warning(f"Invalid topics count: {len(topics or [])}, using fallback")
        return list(FALLBACK_TOPICS)
    return topics
