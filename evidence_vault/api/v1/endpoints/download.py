"""Buyer download endpoint: ``GET /download/{token}``."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from evidence_vault.core.context import AppContext, get_context
from evidence_vault.services.download_gateway import DownloadDenied
from evidence_vault.utils.http import client_ip

router: APIRouter = APIRouter()


@router.get("/{token}")
def download(token: str, request: Request, context: AppContext = Depends(get_context)):
    try:
        served = context.gateway.serve(
            token,
            range_header=request.headers.get("range"),
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except DownloadDenied as exc:
        headers = {"Cache-Control": "no-store"}
        if exc.object_size is not None:
            headers["Content-Range"] = f"bytes */{exc.object_size}"
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code}, headers=headers)

    stream = served.stream
    headers = {
        "Content-Disposition": f'attachment; filename="{served.filename}"',
        "Content-Length": str(stream.content_length),
        "Accept-Ranges": "bytes",
        "Cache-Control": "no-store",
        "X-Content-Type-Options": "nosniff",
    }
    if stream.content_range:
        headers["Content-Range"] = stream.content_range
    return StreamingResponse(stream.body, status_code=stream.status_code, media_type=stream.content_type, headers=headers)
