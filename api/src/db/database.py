from functools import lru_cache

from api.src.config import get_settings
from controller.src.services.state_store import RunStateStore
from controller.src.services.sql_store import SqlRunStateStore

settings = get_settings()

@lru_cache()
def get_store() -> RunStateStore:
    """Run state store shared with the controller."""
    return SqlRunStateStore.from_url(settings.database_url)

def init_db():
    store = get_store()
    if isinstance(store, SqlRunStateStore):
        store.init_db()
