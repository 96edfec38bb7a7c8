"""Translate pipeline errors into JSON HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from docqa.application.exceptions import ChatPipelineError, RateLimitError


async def pipeline_error_handler(request: Request, exc: ChatPipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("{} {} failed at {}: {}", request.method, request.url.path, exc.stage, exc.message)
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.opt(exception=exc).error("Unhandled error on {} {}", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Failed to process chat message", "details": str(exc)},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ChatPipelineError, pipeline_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
