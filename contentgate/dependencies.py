"""Per-app service objects, created in main.lifespan and handed to routes via Depends."""
from fastapi import Request

from contentgate.services.rasterizer import Rasterizer
from contentgate.services.transcoder import TranscodeWorkerPool
from contentgate.services.violations import ViolationLedger


def get_rasterizer(request: Request) -> Rasterizer:
    return request.app.state.rasterizer


def get_transcode_pool(request: Request) -> TranscodeWorkerPool:
    return request.app.state.transcode_pool


def get_violation_ledger(request: Request) -> ViolationLedger:
    return request.app.state.violation_ledger
