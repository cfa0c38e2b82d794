"""Material registry and campaign lifecycle endpoints used around the allocation core."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from fleetslot.controllers.allocation_controller import MaterialPayload, TimeWindowModel
from fleetslot.controllers.dependencies import (
    get_allocation_service,
    get_repository,
    to_http_exception,
)
from fleetslot.domain.errors import AllocationError
from fleetslot.domain.models import Campaign, Material, PaymentStatus
from fleetslot.repository.data_repository import DataRepository
from fleetslot.services.allocation_service import AllocationService
from fleetslot.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["registry"])


class CampaignCreateRequest(TimeWindowModel):
    """Registers a campaign and, when materials are given, reserves them in one step."""

    campaign_id: str = Field(min_length=1)
    material_ids: list[str] = Field(default_factory=list)


class CampaignResponse(BaseModel):
    campaign_id: str
    start_time: datetime
    end_time: datetime
    payment_status: str
    status: str
    material_ids: list[str]
    created_at: datetime
    reason_for_reject: Optional[str] = None


class PaymentUpdateRequest(BaseModel):
    payment_status: PaymentStatus


def _campaign_response(campaign: Campaign) -> CampaignResponse:
    return CampaignResponse(
        campaign_id=campaign.campaign_id,
        start_time=campaign.start_time,
        end_time=campaign.end_time,
        payment_status=campaign.payment_status.value,
        status=campaign.status.value,
        material_ids=list(campaign.material_ids),
        created_at=campaign.created_at,
        reason_for_reject=campaign.reason_for_reject,
    )


@router.post("/materials", response_model=MaterialPayload, status_code=status.HTTP_201_CREATED)
def register_material(
    payload: MaterialPayload,
    repository: DataRepository = Depends(get_repository),
) -> MaterialPayload:
    repository.upsert_material(
        Material(
            material_id=payload.material_id,
            material_type=payload.material_type,
            vehicle_type=payload.vehicle_type,
            category=payload.category,
        )
    )
    logger.info("Material registered | material_id=%s", payload.material_id)
    return payload


@router.get("/materials", response_model=list[MaterialPayload])
def list_materials(
    material_type: Optional[str] = None,
    vehicle_type: Optional[str] = None,
    category: Optional[str] = None,
    repository: DataRepository = Depends(get_repository),
) -> list[MaterialPayload]:
    materials = repository.list_materials(
        material_type=material_type,
        vehicle_type=vehicle_type,
        category=category,
    )
    return [
        MaterialPayload(
            material_id=material.material_id,
            material_type=material.material_type,
            vehicle_type=material.vehicle_type,
            category=material.category,
        )
        for material in materials
    ]


@router.post("/campaigns", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
def create_campaign(
    payload: CampaignCreateRequest,
    repository: DataRepository = Depends(get_repository),
    service: AllocationService = Depends(get_allocation_service),
) -> CampaignResponse:
    if repository.get_campaign(payload.campaign_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Campaign {payload.campaign_id} already exists",
        )

    if payload.material_ids:
        try:
            service.reserve(
                campaign_id=payload.campaign_id,
                material_ids=payload.material_ids,
                start=payload.start_time,
                end=payload.end_time,
            )
        except AllocationError as exc:
            raise to_http_exception(exc) from exc

    try:
        campaign = repository.create_campaign(
            campaign_id=payload.campaign_id,
            start_time=payload.start_time,
            end_time=payload.end_time,
            material_ids=payload.material_ids,
        )
    except sqlite3.IntegrityError as exc:
        # reserve rejects materials the campaign already holds, so these slots are ours
        service.release(payload.campaign_id, payload.material_ids)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Campaign {payload.campaign_id} already exists",
        ) from exc

    logger.info(
        "Campaign created | campaign_id=%s | materials=%s",
        campaign.campaign_id,
        len(campaign.material_ids),
    )
    return _campaign_response(campaign)


@router.get("/campaigns/{campaign_id}", response_model=CampaignResponse)
def get_campaign(
    campaign_id: str,
    repository: DataRepository = Depends(get_repository),
) -> CampaignResponse:
    campaign = repository.get_campaign(campaign_id)
    if campaign is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Campaign {campaign_id} not found",
        )
    return _campaign_response(campaign)


@router.post("/campaigns/{campaign_id}/payment", response_model=CampaignResponse)
def update_payment(
    campaign_id: str,
    payload: PaymentUpdateRequest,
    repository: DataRepository = Depends(get_repository),
) -> CampaignResponse:
    if not repository.update_payment_status(campaign_id, payload.payment_status):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Campaign {campaign_id} not found",
        )
    campaign = repository.get_campaign(campaign_id)
    if campaign is None:  # pragma: no cover - row updated above
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campaign not found")
    return _campaign_response(campaign)
