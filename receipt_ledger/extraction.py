"""Vision-model recognition and JSON recovery from model output"""
import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import ollama
from google import genai

from .config import Provider, Settings
from .errors import MalformedOutputError, TransportError, classify_error
from .images import image_to_base64, load_image
from .models import UploadedFile


logger = logging.getLogger(__name__)

Recognizer = Callable[[UploadedFile], Awaitable[str]]

# How many cut points to try when a truncated document will not close cleanly
MAX_REPAIR_BACKTRACK = 20

FENCE_PATTERN = re.compile(r"```(?:json)?[ \t]*\n?(.*?)\n?[ \t]*```", re.DOTALL | re.IGNORECASE)
OPEN_FENCE_PATTERN = re.compile(r"^```(?:json)?", re.IGNORECASE)
TRAILING_JUNK_PATTERN = re.compile(r"[\s,:]+$")

_FAILED = object()


EXTRACTION_PROMPT = """
You are a bookkeeping assistant for Taiwanese invoices and receipts (發票/收據).
Analyze the image and return a strictly formatted JSON object.

If the image contains several invoices, return one record per invoice:
{
  "invoices": [
    {
      "thought_process": "string (short notes on how you read the document)",
      "category": "0-9 (invoice type code, default 0)",
      "supplier_name": "string (the SELLER, never the buyer)",
      "supplier_tax_id": "8 digits (seller 統一編號) or null",
      "invoice_number": "2 letters + 8 digits, e.g. AB12345678, or null",
      "invoice_date": "YYYY-MM-DD",
      "total_amount": number,
      "tax_amount": number or null,
      "tax_exempt": boolean,
      "items": [
        {"description": "string", "amount": number}
      ]
    }
  ]
}

Category codes:
0 電子發票, 1 三聯式手開發票, 2 三聯式收銀機發票, 3 二聯式收銀機發票(含機票,車票,水電費收據),
4 進貨折讓證明單, 5 海關進出口貨物稅費繳納證, 6 三聯式零稅率發票, 7 進貨零稅率折讓證明單,
8 海關進口代徵退還溢繳營業稅, 9 境外電商及不得扣抵之電子發票

Rules:
1. Dates printed in the ROC calendar (e.g. 113年) may be copied as printed; they are converted later.
2. total_amount is the final tax-inclusive amount actually paid.
3. Only fill tax_amount when a 營業稅/VAT figure is printed; otherwise use null.
4. Mark tax_exempt true for 免稅 or 零稅率 documents.
5. Output ONLY the JSON object.
"""


def _try_parse(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return _FAILED


def _as_object(parsed: Any) -> Optional[Dict[str, Any]]:
    if isinstance(parsed, dict):
        return parsed
    if isinstance(parsed, list):
        return {"invoices": parsed}
    return None


def _strip_fence(text: str) -> str:
    match = FENCE_PATTERN.search(text)
    if match:
        return match.group(1).strip()

    stripped = text.strip()
    if stripped.startswith("```"):
        # Opening fence whose closing fence was cut off
        stripped = OPEN_FENCE_PATTERN.sub("", stripped, count=1)
    return stripped.strip()


def _close(text: str, stack: List[str]) -> str:
    return TRAILING_JUNK_PATTERN.sub("", text) + "".join(reversed(stack))


def _repair_candidates(text: str) -> List[str]:
    """Build closed-off versions of a document that was cut mid-structure.

    The first candidate closes an open string and appends the missing
    closers; later candidates cut back to earlier element boundaries
    (after an opening bracket, or before a separating comma).
    """
    stack: List[str] = []
    cut_points: List[Tuple[int, List[str]]] = []
    in_string = False
    escaped = False

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
            cut_points.append((index + 1, list(stack)))
        elif char in "}]":
            if not stack or stack[-1] != char:
                # Mismatched closer: broken, not truncated
                return []
            stack.pop()
        elif char == ",":
            cut_points.append((index, list(stack)))

    if not stack and not in_string:
        return []

    tail = text
    if in_string:
        if escaped:
            tail = tail[:-1]
        tail += '"'

    candidates = [_close(tail, stack)]
    for position, snapshot in reversed(cut_points[-MAX_REPAIR_BACKTRACK:]):
        if snapshot:
            candidates.append(_close(text[:position], snapshot))
    return candidates


def extract_json(raw: str) -> Dict[str, Any]:
    """Recover a JSON object from raw model output.

    Attempts, first success wins:
      1. strip a markdown code fence and parse the interior
      2. parse from the first ``{`` to the last ``}``, then the first
         complete object with any trailing text dropped
      3. close a truncated document by appending missing brackets

    A top-level array is returned as ``{"invoices": [...]}``.

    Raises:
        MalformedOutputError: if no attempt yields a JSON object
    """
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedOutputError("Model returned empty output", raw if isinstance(raw, str) else "")

    unfenced = _strip_fence(raw)
    result = _as_object(_try_parse(unfenced))
    if result is not None:
        return result

    first_brace = raw.find("{")
    last_brace = raw.rfind("}")
    if first_brace != -1 and last_brace > first_brace:
        result = _as_object(_try_parse(raw[first_brace:last_brace + 1]))
        if result is not None:
            logger.debug("Parsed JSON object embedded in surrounding text")
            return result

    leading_brace = unfenced.find("{")
    if leading_brace != -1:
        try:
            parsed, _ = json.JSONDecoder().raw_decode(unfenced[leading_brace:])
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            logger.debug("Parsed leading JSON object, ignoring trailing text")
            return parsed

    starts = [pos for pos in (leading_brace, unfenced.find("[")) if pos != -1]
    if starts:
        for candidate in _repair_candidates(unfenced[min(starts):]):
            result = _as_object(_try_parse(candidate))
            if result is not None:
                logger.warning("Recovered truncated model output (%d chars)", len(raw))
                return result

    raise MalformedOutputError("Failed to parse JSON from model output", raw)


async def gemini_recognize(
    file: UploadedFile,
    settings: Settings,
    prompt: str = EXTRACTION_PROMPT
) -> str:
    """Send one image to Gemini and return the raw response text"""
    if not settings.gemini_api_key:
        raise ValueError("GEMINI_API_KEY not set")

    image = load_image(file.image_bytes)
    client = genai.Client(api_key=settings.gemini_api_key)

    try:
        response = await asyncio.wait_for(
            client.aio.models.generate_content(
                model=settings.gemini_model,
                contents=[prompt, image]
            ),
            timeout=settings.request_timeout_seconds
        )
    except asyncio.TimeoutError:
        raise TransportError(
            f"Gemini request timed out after {settings.request_timeout_seconds:g}s"
        )
    except Exception as e:
        error = classify_error(e)
        if error is e:
            raise
        raise error from e

    text = response.text
    if not text:
        raise TransportError("No response from Gemini")
    return text


async def ollama_recognize(
    file: UploadedFile,
    settings: Settings,
    prompt: str = EXTRACTION_PROMPT
) -> str:
    """Send one image to a local Ollama vision model and return the raw response text"""
    image = image_to_base64(load_image(file.image_bytes))
    client = ollama.AsyncClient(host=settings.ollama_host)

    try:
        response = await asyncio.wait_for(
            client.chat(
                model=settings.ollama_model,
                messages=[{
                    "role": "user",
                    "content": prompt,
                    "images": [image]
                }],
                options={"temperature": 0.1}
            ),
            timeout=settings.request_timeout_seconds
        )
    except asyncio.TimeoutError:
        raise TransportError(
            f"Ollama request timed out after {settings.request_timeout_seconds:g}s"
        )
    except Exception as e:
        error = classify_error(e)
        if error is e:
            raise
        raise error from e

    text = response["message"]["content"]
    if not text:
        raise TransportError(f"No response from Ollama model '{settings.ollama_model}'")
    return text


def make_recognizer(settings: Settings) -> Recognizer:
    """Bind the configured provider to ``settings``"""
    if settings.provider == Provider.OLLAMA:
        async def recognize(file: UploadedFile) -> str:
            return await ollama_recognize(file, settings)
        return recognize

    if not settings.gemini_api_key:
        raise ValueError("GEMINI_API_KEY not set")

    async def recognize(file: UploadedFile) -> str:
        return await gemini_recognize(file, settings)
    return recognize
