"""FastAPI dependency injection — pipeline components built once in the lifespan."""
from fastapi import Request

from app.config import Settings
from app.services.ai_gateway import AIGateway
from app.services.element_extractor import ElementExtractor
from app.services.forge_auth import ForgeTokenProvider
from app.services.forge_upload import ForgeUploadChannel
from app.services.translation_tracker import JobRegistry, TranslationTracker


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_token_provider(request: Request) -> ForgeTokenProvider:
    return request.app.state.tokens


def get_viewer_token_provider(request: Request) -> ForgeTokenProvider:
    return request.app.state.viewer_tokens


def get_upload_channel(request: Request) -> ForgeUploadChannel:
    return request.app.state.uploads


def get_tracker(request: Request) -> TranslationTracker:
    return request.app.state.tracker


def get_job_registry(request: Request) -> JobRegistry:
    return request.app.state.jobs


def get_extractor(request: Request) -> ElementExtractor:
    return request.app.state.extractor


def get_ai_gateway(request: Request) -> AIGateway:
    return request.app.state.ai
