# share_routes.py

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from audit import RequesterInfo, client_ip
from core import DropVaultCore
from errors import SHARE_ACCESS_ERRORS, AuthenticationFailed, InvalidShareRequest, NotFound, StorageFailure
from file_service import detect_mime
from schemas import CreateShareRequest, CreateShareResponse, ShareMetaOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/share", tags=["Sharing"])

# one message for every dead, unknown or mismatched link
INVALID_SHARE_DETAIL = "Share link is invalid or has expired."


def get_core(request: Request) -> DropVaultCore:
    return request.app.state.core


def requester_info(request: Request) -> RequesterInfo:
    host = request.client.host if request.client else None
    return RequesterInfo(
        ip_address=client_ip(request.headers, host),
        user_agent=request.headers.get("User-Agent"),
    )


# ─── CREATE SHARE ─────────────────────────────────────

@router.post("/{external_id}", response_model=CreateShareResponse)
def create_share(
    external_id: str,
    req: CreateShareRequest,
    password: Optional[str] = Header(None, alias="X-File-Password"),
    core: DropVaultCore = Depends(get_core),
):
    try:
        grant = core.mint_share_token(
            external_id,
            expiration_date=req.expiration_date,
            max_downloads=req.max_downloads,
            mode=req.mode,
            token=req.token,
            public_id=req.public_id,
            secret_hash=req.secret_hash,
            wrapped_key=req.wrapped_key,
            wrap_nonce=req.wrap_nonce,
            password=password,
        )
    except NotFound:
        raise HTTPException(status_code=404, detail="File not found.")
    except AuthenticationFailed:
        raise HTTPException(status_code=403, detail="Wrong file password.")
    except InvalidShareRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageFailure as e:
        logger.error(f"Share creation failed for {external_id}: {e}")
        raise HTTPException(status_code=500, detail="Could not create share link.")

    share = grant.share
    return CreateShareResponse(
        token=grant.token,
        token_mode=share.token_mode,
        public_id=share.public_id,
        download_url=f"/share/{grant.token}/download",
        expiration_date=share.expiration_date,
        remaining_downloads=share.remaining_downloads,
    )


# ─── METADATA ─────────────────────────────────────────

@router.get("/{token}/meta", response_model=ShareMetaOut)
def share_meta(
    token: str,
    secret: Optional[str] = Query(None),
    core: DropVaultCore = Depends(get_core),
):
    try:
        return ShareMetaOut(**core.shares.describe_share(token, presented_secret=secret))
    except SHARE_ACCESS_ERRORS:
        raise HTTPException(status_code=404, detail=INVALID_SHARE_DETAIL)


# ─── DOWNLOAD ─────────────────────────────────────────

@router.get("/{token}/download")
def download_shared_file(
    token: str,
    request: Request,
    secret: Optional[str] = Query(None),
    core: DropVaultCore = Depends(get_core),
):
    try:
        redemption = core.redeem_share_token(
            token,
            presented_secret=secret,
            requester=requester_info(request),
        )
    except SHARE_ACCESS_ERRORS:
        raise HTTPException(status_code=404, detail=INVALID_SHARE_DETAIL)
    except StorageFailure as e:
        logger.error(f"Share download failed: {e}")
        raise HTTPException(status_code=500, detail="Could not read the shared file.")

    file = redemption.file
    headers = {"Content-Disposition": f"attachment; filename*=UTF-8''{quote(file.display_name)}"}
    if redemption.remaining_downloads is not None:
        headers["X-Remaining-Downloads"] = str(redemption.remaining_downloads)

    # client-encrypted bodies stay opaque
    opaque = file.encrypted and not file.server_decrypts
    media_type = "application/octet-stream" if opaque else detect_mime(file.display_name)
    return StreamingResponse(redemption.chunks, media_type=media_type, headers=headers)
