import json
import logging
from typing import List, Optional

from openai import OpenAI

from config import settings
from .models import TranscriptSummary, VideoChapter, parse_chapter_lines

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """
You summarize podcast and audio transcripts.

Return a strict JSON object with exactly these keys:
{
  "shortSummary": "2-3 sentence overview",
  "longSummary": "several paragraphs covering the main discussion",
  "bulletPoints": ["key point", "..."],
  "keywords": ["keyword", "..."],
  "sentiment": "positive|neutral|negative",
  "language": "ISO 639-1 code of the transcript language"
}
"""


def get_openai_client(api_key: Optional[str] = None) -> Optional[OpenAI]:
    key = api_key if api_key is not None else settings.OPENAI_API_KEY
    if not key:
        return None
    return OpenAI(api_key=key)


def summarize_transcript(text: str, language: Optional[str] = None, api_key: Optional[str] = None) -> TranscriptSummary:
    """
    Summarize a transcript with a chat model in JSON mode.

    Long transcripts are truncated to ``SUMMARY_MAX_INPUT_CHARS`` before sending.
    """
    client = get_openai_client(api_key)
    if client is None:
        raise RuntimeError("OPENAI_API_KEY is not configured.")

    max_chars = int(settings.SUMMARY_MAX_INPUT_CHARS)
    transcript_text = text or ""
    if len(transcript_text) > max_chars:
        transcript_text = transcript_text[:max_chars] + "...(truncated)"

    hint = f"\nDetected language: {language}" if language else ""
    response = client.chat.completions.create(
        model=settings.OPENAI_SUMMARY_MODEL,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": f"Summarize this transcript:{hint}\n\n{transcript_text}"},
        ],
        response_format={"type": "json_object"},
        temperature=0.7,
    )

    content = response.choices[0].message.content or "{}"
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.error("Summary model returned invalid JSON: %s", e)
        raise

    summary = TranscriptSummary.from_llm_payload(data)
    if not summary.language and language:
        summary.language = language
    return summary


CHAPTERS_SYSTEM_PROMPT = """
You turn video transcripts into chapter markers.

Return only the chapters, one per line, as "TIMESTAMP Chapter title":
00:00 Opening
05:23 Second topic

Rules:
- start with 00:00
- use MM:SS, or H:MM:SS past one hour
- between 5 and 15 chapters, each roughly 2-10 minutes long, scaled to the video length
- short, descriptive titles
- no text before or after the list
"""


def generate_chapters(
    text: str,
    duration_seconds: float,
    language: Optional[str] = None,
    api_key: Optional[str] = None,
) -> List[VideoChapter]:
    """Ask the chat model for timestamped chapters and parse its answer.

    Returns an empty list when the reply has no usable timestamp lines.
    """
    client = get_openai_client(api_key)
    if client is None:
        raise RuntimeError("OPENAI_API_KEY is not configured.")

    max_chars = int(settings.CHAPTERS_MAX_INPUT_CHARS)
    transcript_text = text or ""
    if len(transcript_text) > max_chars:
        transcript_text = transcript_text[:max_chars] + "...(truncated)"

    if language:
        language_rule = f"The transcript language is {language}; write chapter titles in that language."
    else:
        language_rule = "Write chapter titles in the transcript's language."
    minutes = max(round(float(duration_seconds or 0) / 60.0), 1)
    response = client.chat.completions.create(
        model=settings.OPENAI_SUMMARY_MODEL,
        messages=[
            {"role": "system", "content": f"{CHAPTERS_SYSTEM_PROMPT}\n{language_rule}"},
            {
                "role": "user",
                "content": f"The video is about {minutes} minutes long.\n\nTranscript:\n{transcript_text}",
            },
        ],
        temperature=0.7,
    )

    content = response.choices[0].message.content or ""
    chapters = parse_chapter_lines(content, duration_seconds)
    if not chapters:
        logger.warning("Chapter model reply had no timestamp lines: %.200s", content)
    return chapters
