"""Upload passthrough endpoints.

Each endpoint accepts the multipart form the client would have sent to the
upstream host, runs it through the rate limit aware provider client and
relays the upstream answer back.
"""

from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.datastructures import UploadFile

from relay.app.core.logging import get_log_context, get_logger
from relay.app.providers.base import FormFile
from relay.app.providers.factory import ProviderRegistry, get_provider_registry
from relay.app.providers.imgchest import IMAGE_FIELD
from relay.app.ratelimit.interpreter import UpstreamResult, extract_rate_limit_headers

router = APIRouter(prefix="/upload", tags=["upload"])
logger = get_logger(__name__)


def get_registry() -> ProviderRegistry:
    """Provider registry as a FastAPI dependency."""
    return get_provider_registry()


def get_bearer_token(request: Request) -> Optional[str]:
    """Extract Bearer token from Authorization header.

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth[7:].strip() or None


async def _read_form(request: Request) -> Tuple[List[Tuple[str, str]], List[Tuple[str, FormFile]]]:
    """Split the incoming multipart form into plain fields and file parts.

    Order and repeated keys are preserved.
    """
    form = await request.form()
    fields: List[Tuple[str, str]] = []
    files: List[Tuple[str, FormFile]] = []
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            content = await value.read()
            files.append(
                (
                    key,
                    (
                        value.filename or "upload",
                        content,
                        value.content_type or "application/octet-stream",
                    ),
                )
            )
        else:
            fields.append((key, value))
    return fields, files


def _json_passthrough(result: UpstreamResult) -> JSONResponse:
    body = result.body if result.body is not None else {"error": result.raw_text}
    return JSONResponse(
        content=body,
        status_code=result.status_code,
        headers=extract_rate_limit_headers(result.headers),
    )


@router.post("/catbox", response_model=None)
async def upload_catbox(
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
) -> Response:
    """Forward a catbox API call (fileupload, urlupload or createalbum)."""
    fields, files = await _read_form(request)
    result = await registry.catbox.upload(fields, files)
    return PlainTextResponse(result.raw_text, status_code=result.status_code)


@router.post("/sxcu/collections", response_model=None)
async def create_sxcu_collection(
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
) -> JSONResponse:
    """Create a sxcu collection.

    A 429 (upstream or local) is returned immediately with rate limit
    headers so the client can schedule its next attempt.
    """
    fields, files = await _read_form(request)
    result = await registry.sxcu.create_collection(fields, files)
    return _json_passthrough(result)


@router.post("/sxcu/files", response_model=None)
async def upload_sxcu_file(
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
) -> JSONResponse:
    """Upload one file to sxcu."""
    fields, files = await _read_form(request)
    result = await registry.sxcu.upload_file(fields, files)
    return _json_passthrough(result)


@router.post("/imgchest/post", response_model=None)
async def create_imgchest_post(
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
) -> JSONResponse:
    """Create an imgchest post from any number of images.

    Posts over the per-request image cap are created with the first chunk
    and completed with append calls. Throttle waits happen here; the client
    only receives the final outcome.
    """
    fields, files = await _read_form(request)
    images = [part for key, part in files if key == IMAGE_FIELD]

    logger.info(
        f"Imgchest post requested with {len(images)} images",
        extra=get_log_context(provider="imgchest"),
    )
    result = await registry.imgchest.create_post(images, fields, token=get_bearer_token(request))
    return JSONResponse(content=result.body, headers=result.headers)


@router.post("/imgchest/post/{post_id}/add", response_model=None)
async def add_imgchest_images(
    post_id: str,
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
) -> JSONResponse:
    """Append images to an existing imgchest post."""
    _, files = await _read_form(request)
    images = [part for key, part in files if key == IMAGE_FIELD]
    result = await registry.imgchest.add_to_post(post_id, images, token=get_bearer_token(request))
    return JSONResponse(content=result.body, headers=result.headers)
