import logging

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from dispatch_hub.config import settings
from dispatch_hub.routers import audit, dispatch, invoices

logging.basicConfig(level=settings.log_level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

app = FastAPI(title='Dispatch Hub')

app.include_router(invoices.router)
app.include_router(audit.router)
app.include_router(dispatch.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
