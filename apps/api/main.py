# apps/api/main.py
from apps.api.app_factory import create_app
from apps.api.batches import create_batches_router
from apps.workers.pipeline_loader import (
    get_coordinator,
    get_dispatcher,
    get_entry_store,
    get_image_store,
    get_settings,
)

batches_router = create_batches_router(
    store=get_entry_store(),
    images=get_image_store(),
    dispatcher=get_dispatcher(),
    coordinator=get_coordinator(),
)

app = create_app(routers=[batches_router], log_level=get_settings().log_level)
