"""AI API — cost prediction, BIM analysis, QS reports, photo analysis, advice."""
import base64
import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field

from app.api.deps import get_ai_gateway
from app.models.pipeline_models import BIMFileInfo, CostPredictionRequest
from app.services.ai_gateway import AIGateway

logger = logging.getLogger("estimate-api.ai")

router = APIRouter(prefix="/api", tags=["AI"])

MAX_PHOTO_BYTES = 10 * 1024 * 1024
PHOTO_TYPES = {"image/jpeg", "image/png", "image/webp"}


class AdviceRequest(BaseModel):
    query: str = Field(min_length=1)
    context: Optional[Union[dict, str]] = None


@router.post("/ai/predict-costs")
async def predict_costs(body: CostPredictionRequest, ai: AIGateway = Depends(get_ai_gateway)):
    prediction = await ai.predict_cost(body)
    return prediction.model_dump(by_alias=True, exclude={"provider"})


@router.post("/ai/analyze-bim")
async def analyze_bim(body: BIMFileInfo, ai: AIGateway = Depends(get_ai_gateway)):
    return {"analysis": await ai.analyze_bim_file(body)}


@router.post("/ai/generate-report")
async def generate_report(project: dict, ai: AIGateway = Depends(get_ai_gateway)):
    return {"report": await ai.generate_report(project)}


@router.post("/ai/analyze-photo")
async def analyze_photo(
    photo: UploadFile = File(...),
    room_type: str = Form("kitchen"),
    ai: AIGateway = Depends(get_ai_gateway),
):
    if photo.content_type not in PHOTO_TYPES:
        raise HTTPException(400, f"Unsupported image type '{photo.content_type}'. Use JPEG, PNG or WebP.")
    data = await photo.read()
    if not data:
        raise HTTPException(400, "Photo is empty")
    if len(data) > MAX_PHOTO_BYTES:
        raise HTTPException(400, "Photo too large. Maximum size is 10MB.")
    encoded = base64.b64encode(data).decode("ascii")
    return {"analysis": await ai.analyze_photo(encoded, room_type=room_type)}


@router.post("/ai/advice")
async def construction_advice(body: AdviceRequest, ai: AIGateway = Depends(get_ai_gateway)):
    return {"answer": await ai.construction_advice(body.query, body.context)}


@router.get("/service-status")
async def service_status(ai: AIGateway = Depends(get_ai_gateway)):
    """Credential presence per backend; no connectivity check."""
    return ai.service_status().model_dump()
