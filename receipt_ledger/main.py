"""FastAPI backend for receipt recognition and export"""
import io
import logging
from datetime import datetime, timezone
from typing import List

import ollama
from fastapi import Body, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .batch import BatchProcessor
from .config import Settings
from .export import serialize_csv, serialize_json, to_export_bundle
from .extraction import make_recognizer
from .images import detect_file_type
from .models import FileProcessingResult, UploadedFile


logger = logging.getLogger(__name__)

app = FastAPI(title="Receipt Ledger", version="0.1.0")

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8080",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Load settings and configure logging on startup"""
    if getattr(app.state, "settings", None) is None:
        app.state.settings = Settings()
    settings = app.state.settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    logger.info("Receipt Ledger started with provider %s", settings.provider.value)


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = Settings()
        request.app.state.settings = settings
    return settings


@app.get("/api/health")
async def health_check(request: Request):
    """Health check endpoint"""
    settings = get_settings(request)
    status = {
        "status": "ok",
        "provider": settings.provider.value,
        "ollama_available": False,
        "gemini_available": bool(settings.gemini_api_key)
    }

    # Check Ollama availability on the host the recognizer uses
    try:
        client = ollama.AsyncClient(host=settings.ollama_host)
        models = await client.list()
        status["ollama_available"] = any(
            settings.ollama_model in (model.get("model") or model.get("name") or "")
            for model in models.get("models", [])
        )
    except Exception as e:
        logger.debug("Ollama not reachable: %s", e)

    return status


@app.post("/api/extract")
async def extract_endpoint(request: Request, files: List[UploadFile] = File(...)):
    """Recognize every uploaded image, one after another"""
    settings = get_settings(request)
    max_bytes = settings.max_upload_mb * 1024 * 1024

    uploads = []
    for file in files:
        file_bytes = await file.read()
        file_type = detect_file_type(file_bytes, file.filename or "", file.content_type)

        if file_type == "pdf":
            raise HTTPException(
                status_code=400,
                detail=f"PDF files must be converted to page images first: {file.filename}"
            )
        if file_type != "image":
            raise HTTPException(
                status_code=400,
                detail=f"Unsupported file type: {file.content_type}"
            )
        if len(file_bytes) > max_bytes:
            raise HTTPException(
                status_code=400,
                detail=f"File size exceeds {settings.max_upload_mb}MB limit: {file.filename}"
            )

        uploads.append(UploadedFile(
            file_name=file.filename or "upload",
            image_bytes=file_bytes,
            content_type=file.content_type
        ))

    try:
        recognize = make_recognizer(settings)
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))

    processor = BatchProcessor(uploads, recognize, settings=settings)
    results = await processor.run()
    summary = processor.summary()

    return {
        "results": [result.model_dump(mode="json", by_alias=True) for result in results],
        "totalItems": summary.total_items,
        "summary": summary.model_dump()
    }


@app.post("/api/export")
async def export_endpoint(
    results: List[FileProcessingResult] = Body(...),
    format: str = Query("csv", pattern="^(csv|json)$")
):
    """Export the line items of successful files as CSV or JSON"""
    bundle = to_export_bundle(results)
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")

    if format == "csv":
        content = serialize_csv(bundle).encode("utf-8")
        return StreamingResponse(
            io.BytesIO(content),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f"attachment; filename=receipts_{stamp}.csv"}
        )

    content = serialize_json(bundle).encode("utf-8")
    return StreamingResponse(
        io.BytesIO(content),
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename=receipts_{stamp}.json"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
