from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import Response

from .config import load_config, settings_from_dict
from .core import ConversionService
from .errors import ConversionError
from .jobs import BatchOrchestrator
from .models import ARCHIVE_MIME, ConversionSettings, OutputFormat, SourceAsset
from .packaging import package_archive


def create_app(config_path: Path | None = None, *, require_enabled: bool = True) -> FastAPI:
    config = load_config(config_path)
    if require_enabled and not config.runtime.enable_local_api:
        raise RuntimeError("Local API is disabled. Enable it via config.runtime.enable_local_api")
    service = ConversionService(config)
    max_bytes = config.runtime.max_file_size_mb * 1024 * 1024
    app = FastAPI(title="Local Image Converter", version="0.1.0")

    def parse_settings(raw: str | None) -> ConversionSettings:
        try:
            data = json.loads(raw) if raw else None
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="INVALID_SETTINGS") from exc
        if data is not None and not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="INVALID_SETTINGS")
        try:
            settings = settings_from_dict(data, base=config.defaults)
            settings.validate()
        except ConversionError as exc:
            raise HTTPException(status_code=400, detail=exc.code) from exc
        return settings

    async def read_upload(upload: UploadFile) -> SourceAsset:
        content = await upload.read()
        if len(content) > max_bytes:
            raise HTTPException(status_code=413, detail="SIZE_LIMIT")
        return SourceAsset(name=upload.filename or "upload", data=content, mime_type=upload.content_type)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/formats")
    async def formats() -> dict[str, list[dict[str, str | bool]]]:
        return {
            "formats": [
                {
                    "format": item.value,
                    "extension": item.extension,
                    "mime_type": item.mime_type,
                    "supported": item.is_encodable,
                }
                for item in OutputFormat
            ]
        }

    @app.post("/convert")
    async def convert(file: UploadFile = File(...), settings: str | None = Form(None)) -> Response:
        conversion_settings = parse_settings(settings)
        asset = await read_upload(file)
        try:
            result = await asyncio.to_thread(service.convert, asset, conversion_settings)
        except ConversionError as exc:
            raise HTTPException(status_code=400, detail=exc.code) from exc
        artifact = result.artifact
        return Response(
            content=artifact.data,
            media_type=artifact.mime_type,
            headers={
                "Content-Disposition": f'attachment; filename="{artifact.file_name}"',
                "X-Run-Id": result.run_id,
                "X-Warnings": ",".join(result.warnings),
            },
        )

    @app.post("/batch")
    async def batch(files: List[UploadFile] = File(...), settings: str | None = Form(None)) -> Response:
        conversion_settings = parse_settings(settings)
        assets = [await read_upload(upload) for upload in files]
        orchestrator = BatchOrchestrator(service, conversion_settings)
        orchestrator.extend(assets)
        result = await asyncio.to_thread(orchestrator.submit_all)
        entries = [
            (job.artifact.file_name, job.artifact.data)
            for job in result.jobs
            if job.has_standalone_result and job.artifact is not None
        ]
        summary = {
            "total": result.summary.total,
            "completed": result.summary.completed,
            "failed": result.summary.failed,
            "cancelled": result.summary.cancelled,
            "jobs": [job.to_payload() for job in result.jobs],
        }
        payload = package_archive(entries + [("summary.json", json.dumps(summary, indent=2).encode("utf-8"))])
        orchestrator.clear()
        return Response(
            content=payload,
            media_type=ARCHIVE_MIME,
            headers={"Content-Disposition": 'attachment; filename="converted.zip"'},
        )

    return app
