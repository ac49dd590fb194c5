from .devices_api import router as devices_api_router
from .loans_api import router as loans_api_router
from .maintenance_api import router as maintenance_api_router
from .returns_api import router as returns_api_router
from .warranties_api import router as warranties_api_router

ALL_ROUTERS = (
    devices_api_router,
    loans_api_router,
    returns_api_router,
    maintenance_api_router,
    warranties_api_router,
)
