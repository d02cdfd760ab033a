from fastapi import APIRouter
from outreach.api.routes.analytics import analytics_router
from outreach.api.routes.gmail import gmail_router
from outreach.api.routes.jobs import jobs_router
from outreach.api.routes.outreach import outreach_router
from outreach.api.routes.tracking import tracking_router
from outreach.api.routes.webhooks import webhooks_router

api_router = APIRouter()

api_router.include_router(gmail_router)
api_router.include_router(outreach_router)
api_router.include_router(tracking_router)
api_router.include_router(webhooks_router)
api_router.include_router(jobs_router)
api_router.include_router(analytics_router)
