import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from booking_engine.core.config import CORS_ALLOWED_ORIGINS, LOG_LEVEL, validate_runtime_config
from booking_engine.database import engine, ensure_scheduling_schema
from booking_engine.models import appointment, listing, recurring, time_slot
from booking_engine.routes import scheduling_routes
from booking_engine.scheduling.coalescing import RequestCoalescer

logging.basicConfig(level=LOG_LEVEL)
validate_runtime_config()

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

app.state.slot_coalescer = RequestCoalescer()

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    try:
        listing.Base.metadata.create_all(bind=engine)
        recurring.Base.metadata.create_all(bind=engine)
        appointment.Base.metadata.create_all(bind=engine)
        time_slot.Base.metadata.create_all(bind=engine)
        ensure_scheduling_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and Postgres credentials.')


@app.on_event('shutdown')
def stop_slot_coalescer() -> None:
    app.state.slot_coalescer.shutdown(wait=False)


@app.get('/')
def root():
    return {'status': 'Booking Engine API Running'}


app.include_router(scheduling_routes.router, prefix='/scheduling')
