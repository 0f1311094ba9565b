from fastapi import APIRouter

from jobboard_api.api.routes import billing, billing_webhook, health, job_posts

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(billing_webhook.router, prefix="/billing", tags=["billing-webhook"])
api_router.include_router(billing.router, prefix="/billing", tags=["billing"])
api_router.include_router(job_posts.router, prefix="/job-posts", tags=["job-posts"])
