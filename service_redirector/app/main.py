"""
URL Redirector service.
"""

from typing import Any, Dict, Optional

import httpx
from fastapi import Body
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig

from .runtime import RedirectorRuntime


class ResolveRequest(BaseModel):
    """A request to trace through the live rule store."""
    url: str = Field(..., min_length=1)
    method: Optional[str] = None
    type: Optional[str] = Field(default=None, description="Resource type, e.g. main_frame")


class RedirectorService(BaseService):
    """Redirector service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__("redirector", 8020, config)

        self.runtime = RedirectorRuntime(self.config, metrics=self.metrics, transport=transport)

        @self.app.on_event("startup")
        async def _startup():
            await self.runtime.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.runtime.stop()

        self._setup_redirector_routes()

    def _setup_redirector_routes(self):
        """Set up redirector-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "redirector",
                "message": "URL Redirector Service",
                "version": "1.0.0",
                "capabilities": ["resolution", "declarative_rules", "feed_refresh", "sync_storage"]
            }

        @self.app.post("/refresh")
        async def refresh():
            """Download every auto-updating feed and report per-feed failures."""
            report = await self.runtime.refresh()
            return report.to_dict()

        @self.app.get("/refresh/status")
        async def refresh_status():
            last_report = self.runtime.last_report
            return {
                "refreshing": self.runtime.is_refreshing,
                "last_report": last_report.to_dict() if last_report else None
            }

        @self.app.post("/resolve")
        async def resolve(request: ResolveRequest):
            """Trace where a URL would be redirected."""
            snapshot = self.runtime.holder.current()
            trace = self.runtime.engine.resolve(request.url, request.method, request.type, snapshot=snapshot)
            result = trace.to_dict()
            result["snapshot_version"] = snapshot.version
            return result

        @self.app.get("/rules")
        async def get_rules():
            snapshot = self.runtime.holder.current()
            return {
                "snapshot_version": snapshot.version,
                "loaded_at": snapshot.loaded_at.isoformat(),
                "storage": snapshot.store.to_dict()
            }

        @self.app.put("/rules")
        async def replace_rules(document: Dict[str, Any] = Body(...)):
            """Replace the whole rule store."""
            store = await self.runtime.replace_store(document)
            return {
                "snapshot_version": self.runtime.holder.current().version,
                "storage": store.to_dict()
            }

        @self.app.get("/declarative-rules")
        async def get_declarative_rules():
            """Installed declarative records and the rules the compiler declined."""
            compiled = self.runtime.last_compile
            return {
                "rules": [rule.to_platform() for rule in self.runtime.ruleset.get_rules()],
                "declined": [
                    {
                        "source": declined.source,
                        "group_index": declined.group_index,
                        "rule_index": declined.rule_index,
                        "reason": declined.reason.value
                    }
                    for declined in compiled.declined
                ],
                "decline_counts": compiled.decline_counts()
            }

        @self.app.post("/rules/examples")
        async def check_rule_examples():
            """Run each rule's example URL through the rule and the whole store."""
            checks = self.runtime.check_examples()
            return {"checks": [check.to_dict() for check in checks]}

        @self.app.get("/stats")
        async def get_stats():
            return self.runtime.engine.get_engine_stats()

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check redirector dependencies."""
        dependencies = {"storage": "ok"}

        sync_tier = self.runtime.sync_tier
        if sync_tier is None:
            dependencies["sync"] = "disabled"
        else:
            try:
                if sync_tier.redis is not None and await sync_tier.redis.ping():
                    dependencies["sync"] = "ok"
                else:
                    dependencies["sync"] = "unavailable"
            except Exception:
                dependencies["sync"] = "error"

        return dependencies


def create_app(config: Optional[ServiceConfig] = None):
    """Create redirector service application."""
    service = RedirectorService(config)
    return service.app


if __name__ == "__main__":
    service = RedirectorService()
    service.run()
