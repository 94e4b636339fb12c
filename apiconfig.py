import configparser
from os import environ, path

API_DIR = path.dirname(path.realpath(__file__))
API_CFG_FILE_NAME = 'api.cfg'
PATH_TO_API_CFG = path.join(API_DIR, API_CFG_FILE_NAME)

DEFAULT_BEACON_NODE_URL = 'https://ethereum-beacon-api.publicnode.com'
DEFAULT_EXIT_QUEUE_URL = 'https://www.validatorqueue.com/'
DEFAULT_DB_PATH = path.join(API_DIR, 'data', 'eth_exit.db')
DEFAULT_PROVIDERS = ['Lido', 'Etherfi', 'Mantle']


class APIConfig:
    def __init__(self, cfg_path=PATH_TO_API_CFG):
        self._config = configparser.RawConfigParser()
        self._config.read([cfg_path])

    def get(self, section, name, default=None):
        """
        Reads an option from the cfg file, falling back to the
        SECTION_NAME environment variable and then to the default.
        """
        try:
            value = self._config.get(section, name)
        except (configparser.NoSectionError, configparser.NoOptionError):
            value = environ.get(f"{section}_{name.upper()}")
        if value is None or value == "":
            return default
        return value

    def get_int(self, section, name, default):
        return int(self.get(section, name, default))

    def get_float(self, section, name, default):
        return float(self.get(section, name, default))

    def db(self, name):
        if name == "connection_string":
            return self._db_connection_string()
        if name == "path":
            return self.get("DB", "path", DEFAULT_DB_PATH)
        if name == "connection_pool_size":
            return self.get_int("DB", "connection_pool_size", 5)
        return self.get("DB", name)

    def _db_connection_string(self):
        host = self.db("host")
        username = self.db("username")
        password = self.db("password")
        db = self.db("db")

        if not all([host, username, password, db]):
            return None

        return f"{username}:{password}@{host}/{db}"

    def get_beacon_node_url(self):
        return self.get("BEACON_NODE", "url", DEFAULT_BEACON_NODE_URL).rstrip("/")

    def beacon_node_api_key(self):
        return self.get("BEACON_NODE", "api_key")

    def beacon_single_timeout(self):
        return self.get_float("BEACON_NODE", "single_timeout", 10)

    def beacon_bulk_timeout(self):
        return self.get_float("BEACON_NODE", "bulk_timeout", 90)

    def sync_chunk_size(self):
        return self.get_int("SYNC", "chunk_size", 500)

    def sync_chunk_delay(self):
        return self.get_float("SYNC", "chunk_delay", 1.0)

    def sync_fallback_chunk_size(self):
        return self.get_int("SYNC", "fallback_chunk_size", 50)

    def sync_fallback_delay(self):
        return self.get_float("SYNC", "fallback_delay", 0.2)

    def sync_interval(self):
        return self.get_int("SYNC", "interval", 3600)

    def providers(self):
        names = self.get("PROVIDERS", "names")
        if not names:
            return list(DEFAULT_PROVIDERS)
        return [name.strip() for name in names.split(",") if name.strip()]

    def get_exit_queue_url(self):
        return self.get("EXIT_QUEUE", "url", DEFAULT_EXIT_QUEUE_URL)

    def get_self_url(self):
        return self.get("SERVER", "self_url", "http://localhost:3001").rstrip("/")

    def server_port(self):
        return self.get_int("SERVER", "port", 3001)
