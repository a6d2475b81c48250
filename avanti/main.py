from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import logging
import os

# Import database and models
from .database import engine
from .models import Base

# Import routers
from .routers import auth

# Import API routers
from .api import task_sessions as api_task_sessions, tasks as api_tasks

# Import SSE router
from . import sse

logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

# Initialize FastAPI app
app = FastAPI(title="Avanti Task Time Ledger", version="1.0.0")

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router)

# Include API routers
app.include_router(api_task_sessions.router)
app.include_router(api_tasks.router)

# Realtime change feed
app.include_router(sse.router)

@app.get("/health")
async def health():
    return {"status": "ok"}

# Error handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"status_code": exc.status_code, "detail": exc.detail},
        headers=exc.headers
    )

@app.exception_handler(500)
async def internal_error_handler(request: Request, exc):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"status_code": 500, "detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
