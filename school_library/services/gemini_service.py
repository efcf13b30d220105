import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from school_library.config import settings
from school_library.models import Category
from school_library.utils.validators import QuantityValidator

logger = logging.getLogger(__name__)

# Models the librarian can pick in settings
AVAILABLE_MODELS = [
    "gemini-2.5-flash-latest",
    "gemini-2.0-flash",
    "gemini-1.5-flash",
]
DEFAULT_MODEL = AVAILABLE_MODELS[0]

# Tried in this order after the preferred model fails
FALLBACK_MODELS = [
    "gemini-3-flash-preview",
    "gemini-3-pro-preview",
    "gemini-2.5-flash",
]

# Only the head of a long document is sent for extraction
MAX_EXTRACT_CHARS = 8000


class AIErrorCode(Enum):
    MISSING_API_KEY = "MISSING_API_KEY"
    INVALID_API_KEY = "INVALID_API_KEY"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    OTHER = "OTHER"


class GeminiAPIError(Exception):
    """Failure talking to the Gemini API"""
    code = AIErrorCode.OTHER


class MissingApiKeyError(GeminiAPIError):
    code = AIErrorCode.MISSING_API_KEY


class InvalidApiKeyError(GeminiAPIError):
    code = AIErrorCode.INVALID_API_KEY


class QuotaExceededError(GeminiAPIError):
    code = AIErrorCode.QUOTA_EXCEEDED


@dataclass
class BookRecommendation:
    title: str
    author: str
    reason: str
    category: str

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "author": self.author, "reason": self.reason, "category": self.category}


@dataclass
class ExtractedBook:
    """A book candidate read out of an uploaded document, pending review."""
    title: str
    author: str
    category: str
    quantity: int

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "author": self.author, "category": self.category, "quantity": self.quantity}


@dataclass
class RecommendationsResult:
    recommendations: List[BookRecommendation] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[AIErrorCode] = None
    used_model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendations": [r.to_dict() for r in self.recommendations],
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
            "used_model": self.used_model,
        }


@dataclass
class ExtractBooksResult:
    books: List[ExtractedBook] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[AIErrorCode] = None
    used_model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "books": [b.to_dict() for b in self.books],
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
            "used_model": self.used_model,
        }


RECOMMENDATION_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "recommendations": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "title": {"type": "STRING"},
                    "author": {"type": "STRING"},
                    "reason": {"type": "STRING", "description": "Short reason why the book is worth reading"},
                    "category": {"type": "STRING"},
                },
            },
        }
    },
}

EXTRACTION_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "books": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "title": {"type": "STRING"},
                    "author": {"type": "STRING"},
                    "category": {"type": "STRING"},
                    "quantity": {"type": "NUMBER"},
                },
            },
        }
    },
}


def describe_error(error: GeminiAPIError) -> str:
    """User-facing text for an AI failure."""
    if error.code == AIErrorCode.MISSING_API_KEY:
        return "No API key configured. Open settings and enter a Gemini API key."
    if error.code == AIErrorCode.INVALID_API_KEY:
        return "The API key is not valid. Please check it and try again."
    if error.code == AIErrorCode.QUOTA_EXCEEDED:
        return "429 RESOURCE_EXHAUSTED: API quota used up. Wait a while or switch API key."
    return f"Error: {error}"


class GeminiService:
    """Book recommendations and document extraction through the Gemini API.

    Each call tries the preferred model first and then the fallback models in
    order. An invalid key stops immediately; any other failure moves on to
    the next model.
    """

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key or settings.gemini_api_key
        self.model = model or DEFAULT_MODEL
        self.base_url = settings.gemini_base_url.rstrip("/")
        self.timeout = settings.gemini_timeout
        self._transport = transport

    def is_available(self) -> bool:
        return bool(self.api_key)

    def model_order(self) -> List[str]:
        return [self.model] + [m for m in FALLBACK_MODELS if m != self.model]

    async def _generate(self, client: httpx.AsyncClient, model: str, prompt: str,
                        schema: Dict[str, Any]) -> Dict[str, Any]:
        """Run one generateContent call and decode the JSON answer."""
        url = f"{self.base_url}/models/{model}:generateContent"
        headers = {
            "x-goog-api-key": self.api_key or "",
            "Content-Type": "application/json",
        }
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": schema,
            },
        }

        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise GeminiAPIError(f"Request timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise GeminiAPIError(f"Request failed: {e}") from e

        if response.status_code != 200:
            body = response.text
            if "API_KEY_INVALID" in body or "api key not valid" in body.lower() or response.status_code == 401:
                raise InvalidApiKeyError(body[:200])
            if response.status_code == 429 or "RESOURCE_EXHAUSTED" in body:
                raise QuotaExceededError(f"429 RESOURCE_EXHAUSTED: {body[:200]}")
            raise GeminiAPIError(f"{response.status_code}: {body[:200]}")

        try:
            data = response.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GeminiAPIError(f"Unexpected response shape from {model}") from e
        try:
            result = json.loads(text or "{}")
        except json.JSONDecodeError as e:
            raise GeminiAPIError(f"{model} did not return valid JSON") from e
        if not isinstance(result, dict):
            raise GeminiAPIError(f"{model} returned {type(result).__name__}, expected an object")
        return result

    async def _call_with_fallback(self, prompt: str, schema: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        if not self.api_key:
            raise MissingApiKeyError("API key not configured")

        last_error: Optional[GeminiAPIError] = None
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for model in self.model_order():
                start_time = time.time()
                try:
                    result = await self._generate(client, model, prompt, schema)
                    elapsed_ms = int((time.time() - start_time) * 1000)
                    logger.info(f"Gemini call succeeded: model={model}, {elapsed_ms}ms")
                    return result, model
                except InvalidApiKeyError:
                    logger.error("Gemini rejected the API key")
                    raise
                except GeminiAPIError as e:
                    logger.warning(f"Model {model} failed: {e}")
                    last_error = e
                    continue

        raise last_error or GeminiAPIError("All models failed")

    async def get_book_recommendations(self, query: str, current_books: List[str]) -> RecommendationsResult:
        """Suggest 3-5 books for high-school students on a topic."""
        prompt = f"""
You are a knowledgeable high-school librarian.
A student is looking for books about: "{query}".

Suggest 3-5 books suitable for students aged 15-18.
Prefer books with educational value, life skills or study support.

Books already in the library (for reference; new suggestions are welcome):
{", ".join(current_books)}

Answer in plain JSON only.
"""
        try:
            result, used_model = await self._call_with_fallback(prompt, RECOMMENDATION_SCHEMA)
        except GeminiAPIError as e:
            logger.error(f"Recommendation failed: {e}")
            return RecommendationsResult(error=describe_error(e), error_code=e.code)

        recommendations = [
            BookRecommendation(
                title=str(item.get("title", "")),
                author=str(item.get("author", "")),
                reason=str(item.get("reason", "")),
                category=str(item.get("category", "")),
            )
            for item in result.get("recommendations") or []
            if isinstance(item, dict)
        ]
        return RecommendationsResult(recommendations=recommendations, used_model=used_model)

    async def extract_books_from_text(self, content: str, is_table_data: bool = False) -> ExtractBooksResult:
        """Pull a list of book candidates out of document text."""
        categories = ", ".join(f'"{c.value}"' for c in Category)
        source = (
            'This is spreadsheet data; columns are separated by "|".'
            if is_table_data
            else "This is text from a Word/PDF document."
        )
        prompt = f"""
You are a professional librarian. Analyse the content below and extract the list of books.

{source}

CONTENT:
\"\"\"
{content[:MAX_EXTRACT_CHARS]}
\"\"\"

Extract every book in the content. For each book give:
1. title - REQUIRED
2. author - if unknown, use "Chưa rõ"
3. category - must be one of: {categories}
4. quantity - if unknown, use 1

Return JSON only, no explanation.
"""
        try:
            result, used_model = await self._call_with_fallback(prompt, EXTRACTION_SCHEMA)
        except GeminiAPIError as e:
            logger.error(f"Book extraction failed: {e}")
            return ExtractBooksResult(error=describe_error(e), error_code=e.code)

        books = [
            ExtractedBook(
                title=str(item.get("title", "")).strip(),
                author=str(item.get("author") or "Chưa rõ").strip(),
                category=str(item.get("category", "")).strip(),
                quantity=QuantityValidator.coerce_quantity(item.get("quantity")),
            )
            for item in result.get("books") or []
            if isinstance(item, dict) and str(item.get("title", "")).strip()
        ]
        logger.info(f"Extracted {len(books)} book candidates using {used_model}")
        return ExtractBooksResult(books=books, used_model=used_model)
