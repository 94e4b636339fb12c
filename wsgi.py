import atexit
import logging

from api_server import create_app
from apiconfig import APIConfig
from beacon_api import BeaconClient
from database_config import Database
from exit_queue import ExitQueue
from sync import SyncManager

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

cfg = APIConfig()

db = Database.from_config(cfg)
db.create_all()
atexit.register(db.close)

beacon = BeaconClient.from_config(cfg)
atexit.register(beacon.close)
sync_manager = SyncManager.from_config(db, beacon, cfg)

app = application = create_app(
    db,
    sync_manager,
    ExitQueue(cfg.get_exit_queue_url()),
    cfg.providers(),
)

logger.info("Up")


if __name__ == "__main__":
    from wsgiref.simple_server import make_server

    with make_server("", cfg.server_port(), app) as httpd:
        logger.info("Serving on port %d", cfg.server_port())
        httpd.serve_forever()
