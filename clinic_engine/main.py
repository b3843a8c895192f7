import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from clinic_engine.core import config
from clinic_engine.database import Base, engine, ensure_engine_schema
from clinic_engine.models import appointment, availability, billing, patient, session_allowance  # noqa: F401
from clinic_engine.routes import billing_routes, patient_routes, scheduling_routes

logging.basicConfig(level=config.LOG_LEVEL)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()

    try:
        Base.metadata.create_all(bind=engine)
        ensure_engine_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.get('/')
def root():
    return {'status': 'Clinic Scheduling API Running'}


app.include_router(scheduling_routes.router, prefix='/scheduling')
app.include_router(patient_routes.router, prefix='/patients')
app.include_router(billing_routes.router, prefix='/billing')
