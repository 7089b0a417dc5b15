"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from isle.obs import logging as obs_logging


def _request_id(request: Request) -> str:
	rid = getattr(request.state, "request_id", None) or obs_logging.current_request_id()
	return rid or request.headers.get("X-Request-Id") or "unknown"


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		payload = {"detail": exc.detail, "request_id": _request_id(request)}
		return JSONResponse(status_code=exc.status_code, content=payload)

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		payload = {
			"detail": "validation_error",
			"errors": jsonable_encoder(exc.errors()),
			"request_id": _request_id(request),
		}
		return JSONResponse(status_code=422, content=payload)
