from fastapi import FastAPI

from redsys_payments.config import get_settings
from redsys_payments.database import Base, engine
from redsys_payments.logging_config import configure_logging
from redsys_payments.routes import router
import redsys_payments.models  # noqa: F401

configure_logging(get_settings().log_level)

app = FastAPI(title="RedSys Payments Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.get("/")
def root():
    return {"service": "redsys-payments", "status": "ok"}
