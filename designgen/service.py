from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel

from designgen.dispatch import Dispatcher, get_dispatcher
from designgen.errors import StoreError
from designgen.llm_client import TextGateway
from designgen.models import Design, DesignRecord, DesignRequest, new_design_id
from designgen.prompts import PerplexityRetriever, Retriever, build_image_prompt, build_prompt
from designgen.store import DesignStore, get_store

log = logging.getLogger(__name__)

try:
    IMAGE_JOBS_PER_DESIGN = max(1, int(os.getenv("IMAGE_JOBS_PER_DESIGN", "1")))
except Exception:
    IMAGE_JOBS_PER_DESIGN = 1


class CreateResult(BaseModel):
    designId: str
    design: Design
    previewUrl: Optional[str] = None


class DesignService:
    """Request workflow: prompt, generate, persist, then fan out image jobs."""

    def __init__(
        self,
        store: Optional[DesignStore] = None,
        gateway: Optional[TextGateway] = None,
        dispatcher: Optional[Dispatcher] = None,
        retriever: Optional[Retriever] = None,
        jobs_per_design: int = IMAGE_JOBS_PER_DESIGN,
    ) -> None:
        self.store = store or get_store()
        self.gateway = gateway or TextGateway()
        self.dispatcher = dispatcher or get_dispatcher()
        self.retriever = retriever or PerplexityRetriever(self.gateway.credentials)
        self.jobs_per_design = max(1, int(jobs_per_design))

    def create_design(self, request: DesignRequest) -> CreateResult:
        prompt, phash = build_prompt(request, self.retriever)
        design, provider = self.gateway.generate_design(prompt, request)
        record = DesignRecord(
            designId=new_design_id(),
            userId=request.user_id,
            promptHash=phash,
            llmModel=provider,
            design=design,
        )
        try:
            self.store.create(record)
        except StoreError:
            # no record means a worker could never attach its preview
            log.exception("designs.create: persist failed design_id=%s; skipping image jobs", record.designId)
            return CreateResult(designId=record.designId, design=design)
        log.info("designs.create: stored design_id=%s provider=%s prompt_hash=%s", record.designId, provider, phash[:12])

        image_prompt = build_image_prompt(design, request)
        for index in range(1, self.jobs_per_design + 1):
            self.dispatcher.enqueue_image_job(record.designId, image_prompt, index)
        return CreateResult(designId=record.designId, design=design)

    def get_status(self, design_id: str) -> Dict[str, Any]:
        record = self.store.get(design_id)
        return {
            "ready": True,
            "design": record.design.model_dump(mode="json"),
            "previewUrl": record.previewUrl,
            "previews": [p.model_dump() for p in record.previews],
        }
