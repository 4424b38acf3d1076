"""
This file provides a serverless function implementation for the EPUB to PDF converter.
This can be deployed to a service like Netlify Functions, Vercel Functions, or AWS Lambda.

Requirements:
- PyMuPDF
- python-multipart (for FastAPI form uploads)
"""

from fastapi import FastAPI, File, UploadFile, Form
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
import uvicorn
import ntpath
import os
import tempfile
import uuid
from urllib.parse import quote
from epub_to_pdf import (
    DEFAULT_PAGE_HEIGHT,
    DEFAULT_PAGE_WIDTH,
    EPUBConversionError,
    PageConfig,
    convert_epub_to_pdf,
    logger,
)

EPUB_MEDIA_TYPE = "application/epub+zip"

# Comma separated list, e.g. "https://example.github.io,http://localhost:3000"
ALLOWED_ORIGINS = os.environ.get("EPUB2PDF_ALLOWED_ORIGINS", "*").split(",")

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message})


def output_filename(upload_name: str) -> str:
    """Name of the PDF attachment for an uploaded file name."""
    stem = os.path.splitext(ntpath.basename(upload_name or ""))[0].replace('"', "") or "converted"
    return f"{stem}.pdf"


@app.exception_handler(RequestValidationError)
async def validation_error(request, exc: RequestValidationError):
    # Form fields FastAPI could not parse, e.g. a non-integer page_width
    message = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'][1:])}: {error['msg']}"
        for error in exc.errors()
    )
    return _error(400, message or "Invalid request")


def content_disposition(filename: str) -> str:
    if filename.isascii():
        return f'attachment; filename="{filename}"'
    # RFC 5987 form for non-ASCII names
    return f"attachment; filename*=UTF-8''{quote(filename)}"


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/convert")
async def convert_epub(
    file: UploadFile = File(...),
    page_width: int = Form(DEFAULT_PAGE_WIDTH),
    page_height: int = Form(DEFAULT_PAGE_HEIGHT),
    margins: bool = Form(True),
):
    """
    Endpoint to convert EPUB files to PDF format
    """
    if file.content_type != EPUB_MEDIA_TYPE:
        return _error(400, "Invalid or no EPUB file found in request")

    try:
        config = PageConfig(page_width, page_height, margins)
    except ValueError as e:
        return _error(400, str(e))

    try:
        # The staged upload is removed on every exit path
        with tempfile.TemporaryDirectory(prefix="epub-") as temp_dir:
            epub_path = os.path.join(temp_dir, f"{uuid.uuid4()}.epub")
            with open(epub_path, "wb") as epub_file:
                epub_file.write(await file.read())

            with open(epub_path, "rb") as epub_file:
                pdf_bytes = convert_epub_to_pdf(epub_file.read(), config=config)

    except EPUBConversionError as e:
        logger.warning(f"Rejected {file.filename}: {e}")
        return _error(400, str(e))
    except Exception as e:
        logger.error(f"Error during EPUB to PDF conversion: {e}", exc_info=True)
        return _error(500, "An error occurred during conversion")

    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": content_disposition(output_filename(file.filename))},
    )


# For local development
if __name__ == "__main__":
    uvicorn.run(
        "app:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        reload=True,
    )
