"""
Bar-list extraction client
Adapter around the AI model that reads rebar schedules out of uploaded files.
Primary: EXTRACT_PRIMARY_MODEL (vision-capable, handles PDFs and images)
Fallback: EXTRACT_FALLBACK_MODEL

The model itself is a black box; this module owns the prompt, the file
preparation (spreadsheets → CSV text, images/PDFs → base64 data URLs) and
the tolerant parsing of whatever JSON comes back.
"""
import io
import os
import re
import json
import base64
import logging
import zipfile
from typing import Any, Dict, List, Optional

import httpx
import litellm
import pandas as pd

from rebarflow.services.errors import ExtractionError

logger = logging.getLogger("rebarflow-extract")

PRIMARY_MODEL = os.getenv("EXTRACT_PRIMARY_MODEL", "gemini/gemini-2.5-pro")
FALLBACK_MODEL = os.getenv("EXTRACT_FALLBACK_MODEL", "gemini/gemini-2.5-flash")
MAX_TOKENS = int(os.getenv("EXTRACT_MAX_TOKENS", "32000"))

# Suppress litellm verbose logging
litellm.set_verbose = False

SPREADSHEET_RE = re.compile(r"\.(xlsx?|csv)$", re.IGNORECASE)
IMAGE_RE = re.compile(r"\.(png|jpe?g|gif|webp|bmp|tiff?)$", re.IGNORECASE)
PDF_RE = re.compile(r"\.pdf$", re.IGNORECASE)

MIME_TYPES = {
    "png": "image/png", "jpg": "image/jpeg", "jpeg": "image/jpeg", "gif": "image/gif",
    "webp": "image/webp", "bmp": "image/bmp", "tif": "image/tiff", "tiff": "image/tiff",
    "pdf": "application/pdf",
}

DIMENSION_LETTERS = ["A", "B", "C", "D", "E", "F", "G", "H", "J", "K", "O", "R"]

SYSTEM_PROMPT = """You are a rebar schedule extraction engine. Your job is to parse uploaded documents (PDFs, spreadsheets, images of drawings) and extract rebar bar-bending schedule data.

Output ONLY a valid JSON object with this structure:
{
  "items": [
    {
      "dwg": "drawing number",
      "item": "item number",
      "grade": "steel grade e.g. 400W",
      "mark": "mark number e.g. A1014",
      "quantity": number,
      "size": "bar size e.g. 10M, 15M, 20M",
      "type": "ASA shape type e.g. 17, 21, 3, S13, or empty for straight",
      "total_length": number in mm,
      "A": number or null, "B": number or null, "C": number or null,
      "D": number or null, "E": number or null, "F": number or null,
      "G": number or null, "H": number or null, "J": number or null,
      "K": number or null, "O": number or null, "R": number or null,
      "weight": number or null,
      "customer": "customer name",
      "ref": "reference code",
      "address": "site address"
    }
  ],
  "summary": {
    "total_items": number,
    "total_pieces": number,
    "bar_sizes_found": ["10M", "15M"],
    "shape_types_found": ["17", "21"],
    "customer": "detected customer name",
    "project": "detected project name"
  }
}

Rules:
- Extract ALL rows/items from the document
- Dimensions (A, B, C, ...) are in millimeters; use null when a column is empty
- "type" is the ASA shape code (1-32, S1-S15, T1-T17, COIL, X, Y, ...); items with no shape type are straight bars
- Always try to detect customer name, project reference and site address from the document context"""


def file_kind(file_name: str) -> str:
    if SPREADSHEET_RE.search(file_name):
        return "spreadsheet"
    if IMAGE_RE.search(file_name):
        return "image"
    if PDF_RE.search(file_name):
        return "pdf"
    return "other"


def mime_type_for(file_name: str) -> str:
    ext = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    return MIME_TYPES.get(ext, "application/octet-stream")


def spreadsheet_to_csv(file_bytes: bytes, file_name: str) -> str:
    """Every non-empty sheet as CSV text, each under a `--- Sheet: name ---` header."""
    try:
        if file_name.lower().endswith(".csv"):
            sheets = {"Sheet1": pd.read_csv(io.BytesIO(file_bytes), header=None, dtype=str)}
        else:
            sheets = pd.read_excel(io.BytesIO(file_bytes), sheet_name=None, header=None, dtype=str)
    except (ValueError, KeyError, zipfile.BadZipFile) as e:
        raise ExtractionError(f"Could not read spreadsheet {file_name}: {e}", {"file_name": file_name}) from e

    parts = []
    for sheet_name, df in sheets.items():
        csv = df.dropna(how="all").to_csv(index=False, header=False)
        if csv.strip():
            parts.append(f"--- Sheet: {sheet_name} ---\n{csv}")
    logger.info(f"Parsed {len(parts)} sheet(s) from {file_name}")
    return "\n\n".join(parts)


def build_messages(file_bytes: bytes, file_name: str, context: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    context_info = ""
    if context:
        context_info = (
            "\n\nManifest context provided by user:"
            f"\n- Manifest Name: {context.get('name') or ''}"
            f"\n- Customer: {context.get('customer') or ''}"
            f"\n- Site Address: {context.get('site_address') or ''}"
            f"\n- Type: {context.get('manifest_type') or ''}"
        )
    content: List[Dict[str, Any]] = [{
        "type": "text",
        "text": (
            f'Extract all rebar schedule data from this uploaded file "{file_name or "document"}" '
            f"and map to our label template.{context_info}\n\n"
            "Return ONLY the JSON object, no markdown formatting."
        ),
    }]

    kind = file_kind(file_name)
    if kind == "spreadsheet":
        content.append({
            "type": "text",
            "text": f"Here is the spreadsheet content as CSV:\n\n{spreadsheet_to_csv(file_bytes, file_name)}",
        })
    elif kind in ("image", "pdf"):
        b64 = base64.b64encode(file_bytes).decode()
        content.append({
            "type": "image_url",
            "image_url": {"url": f"data:{mime_type_for(file_name)};base64,{b64}"},
        })

    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": content},
    ]


def _strip_fences(raw: str) -> str:
    text = re.sub(r"^```(?:json)?\s*", "", raw.strip(), flags=re.IGNORECASE)
    return re.sub(r"```\s*$", "", text).strip()


def parse_extraction_response(raw: str) -> Dict[str, Any]:
    """
    Parse the model's answer into {"items": [...], "summary": {...}}.

    Output cut off by the token limit is repaired by dropping the partial
    trailing item and closing the array. A missing summary is rebuilt from
    the items and the result is flagged `truncated`.
    """
    text = _strip_fences(raw or "")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Initial JSON parse failed, attempting truncation repair")
        cut = text.rfind("},")
        if cut <= 0:
            raise ExtractionError(
                "Failed to parse extraction results",
                {"raw_content": (raw or "")[:1000]},
            )
        try:
            data = json.loads(text[:cut + 1] + "]}")
        except json.JSONDecodeError as e:
            raise ExtractionError(
                "Failed to parse extraction results",
                {"raw_content": (raw or "")[:1000]},
            ) from e
        logger.info(f"Repaired truncated JSON: recovered {len(data.get('items') or [])} items")

    if not isinstance(data, dict) or not isinstance(data.get("items"), list):
        raise ExtractionError("Extraction result has no item list", {"raw_content": (raw or "")[:1000]})

    data.setdefault("truncated", False)
    if not data.get("summary"):
        items = data["items"]
        data["truncated"] = True
        data["summary"] = {
            "total_items": len(items),
            "total_pieces": sum(_to_int(i.get("quantity")) or 0 for i in items),
            "bar_sizes_found": list(dict.fromkeys(i.get("size") for i in items if i.get("size"))),
            "shape_types_found": list(dict.fromkeys(i.get("type") for i in items if i.get("type"))),
            "customer": items[0].get("customer") if items else None,
            "project": items[0].get("ref") if items else None,
        }
    return data


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def items_to_rows(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Extracted items → ExtractedRow column dicts. row_index is 1-based; missing quantity becomes 0."""
    rows = []
    for index, item in enumerate(items, start=1):
        row = {
            "row_index": index,
            "dwg": _to_str(item.get("dwg")),
            "item_number": _to_str(item.get("item")),
            "grade": _to_str(item.get("grade")),
            "mark": _to_str(item.get("mark")),
            "quantity": _to_int(item.get("quantity")) or 0,
            "bar_size": _to_str(item.get("size")),
            "shape_type": _to_str(item.get("type")),
            "total_length_mm": _to_float(item.get("total_length")),
            "weight_kg": _to_float(item.get("weight")),
            "customer": _to_str(item.get("customer")),
            "reference": _to_str(item.get("ref")),
            "address": _to_str(item.get("address")),
        }
        for letter in DIMENSION_LETTERS:
            row[f"dim_{letter.lower()}"] = _to_float(item.get(letter))
        rows.append(row)
    return rows


async def _complete(messages: List[Dict[str, Any]]) -> str:
    kwargs = {"messages": messages, "temperature": 0.1, "max_tokens": MAX_TOKENS}

    try:
        response = await litellm.acompletion(model=PRIMARY_MODEL, **kwargs)
        return response.choices[0].message.content
    except litellm.RateLimitError:
        logger.warning(f"{PRIMARY_MODEL} rate limit hit — falling back to {FALLBACK_MODEL}")
    except Exception as e:
        logger.warning(f"{PRIMARY_MODEL} error ({type(e).__name__}: {e}) — falling back to {FALLBACK_MODEL}")

    try:
        response = await litellm.acompletion(model=FALLBACK_MODEL, **kwargs)
        return response.choices[0].message.content
    except Exception as e:
        logger.error(f"Both extraction models failed. Last error: {e}")
        raise ExtractionError(f"All extraction models failed. Last error: {e}") from e


async def fetch_file(url: str) -> bytes:
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.get(url)
    if resp.status_code != 200:
        raise ExtractionError(f"Failed to fetch file: {resp.status_code}", {"file_url": url})
    return resp.content


async def extract_bar_list(
    file_bytes: bytes,
    file_name: str,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Run one extraction. Returns {"rows": [...], "summary": {...}, "truncated": bool}
    where rows are ready to hand to `record_extraction`.
    """
    messages = build_messages(file_bytes, file_name, context)
    logger.info(f"Extracting bar list from {file_name} ({file_kind(file_name)}, {len(file_bytes)} bytes)")
    raw = await _complete(messages)
    data = parse_extraction_response(raw)
    return {
        "rows": items_to_rows(data["items"]),
        "summary": data["summary"],
        "truncated": data["truncated"],
    }
