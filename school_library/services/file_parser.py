"""Text extraction from uploaded book lists (Word, PDF, Excel).

The output feeds the AI extraction step: Word and PDF give plain text,
spreadsheets give rows joined with `` | `` plus the raw cell grid.
"""

import io
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import docx
import pandas as pd
from pypdf import PdfReader

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = [".docx", ".pdf", ".xlsx", ".xls"]
ACCEPT_FILE_TYPES = ",".join(SUPPORTED_EXTENSIONS)


@dataclass
class ParseResult:
    success: bool
    content: str
    type: str = "text"  # "text" or "table"
    table_data: Optional[List[List[str]]] = None
    error: Optional[str] = None

    @property
    def is_table(self) -> bool:
        return self.type == "table"


def parse_word_file(data: bytes) -> ParseResult:
    try:
        document = docx.Document(io.BytesIO(data))
        lines = [p.text for p in document.paragraphs]
        # book lists are often laid out as tables inside the document
        for table in document.tables:
            for row in table.rows:
                lines.append(" | ".join(cell.text.strip() for cell in row.cells))
        return ParseResult(success=True, content="\n".join(lines), type="text")
    except Exception as e:
        logger.error(f"Could not read Word file: {e}")
        return ParseResult(success=False, content="", error=f"Could not read Word file: {e}")


def parse_pdf_file(data: bytes) -> ParseResult:
    try:
        reader = PdfReader(io.BytesIO(data))
        full_text = ""
        for page in reader.pages:
            full_text += (page.extract_text() or "") + "\n"
        return ParseResult(success=True, content=full_text, type="text")
    except Exception as e:
        logger.error(f"Could not read PDF file: {e}")
        return ParseResult(success=False, content="", error=f"Could not read PDF file: {e}")


def parse_excel_file(data: bytes) -> ParseResult:
    """Read the first sheet as a grid of strings."""
    try:
        frame = pd.read_excel(io.BytesIO(data), sheet_name=0, header=None, dtype=str)
        frame = frame.dropna(how="all").fillna("")
        table_data = [[str(cell).strip() for cell in row] for row in frame.itertuples(index=False)]
        content = "\n".join(" | ".join(row) for row in table_data)
        return ParseResult(success=True, content=content, type="table", table_data=table_data)
    except Exception as e:
        logger.error(f"Could not read Excel file: {e}")
        return ParseResult(success=False, content="", error=f"Could not read Excel file: {e}")


def parse_file(filename: str, data: bytes) -> ParseResult:
    """Pick a parser from the file extension."""
    extension = os.path.splitext(filename.lower())[1]

    if extension == ".docx":
        return parse_word_file(data)
    elif extension == ".pdf":
        return parse_pdf_file(data)
    elif extension in (".xlsx", ".xls"):
        return parse_excel_file(data)
    return ParseResult(
        success=False,
        content="",
        error="Unsupported file format. Use Word (.docx), PDF (.pdf) or Excel (.xlsx, .xls).",
    )
