"""
Resource manager configuration.
"""

from dataclasses import dataclass, fields
from typing import Dict, Optional

from xaresource.utils.config import Config

# Driver-style property names -> ResourceManagerConfig attributes
PROPERTY_NAMES: Dict[str, str] = {
    "pinGlobalTxToPhysicalConnection": "pin_global_tx_to_physical_connection",
    "readOnlyOptimization": "read_only_optimization",
    "recoverBatchSize": "recover_batch_size",
    "xaDialect": "dialect",
    "serverName": "host",
    "portNumber": "port",
    "databaseName": "database",
}


def _coerce(name: str, value: str):
    if name in ("pin_global_tx_to_physical_connection", "read_only_optimization"):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if name in ("port", "recover_batch_size"):
        return int(value) if value.strip() else None
    return value.strip()


@dataclass
class ResourceManagerConfig:
    """
    Configuration for an XA datasource.

    Attributes:
        pin_global_tx_to_physical_connection: Route joins of a global
            transaction to the physical connection it was started on
        read_only_optimization: Vote XA_RDONLY from prepare() for branches
            that ran no data-modifying statements
        recover_batch_size: Max Xids per recover() call (None for all)
        dialect: XA command dialect
        host: Database host (resource manager identity)
        port: Database port (resource manager identity)
        database: Database name (resource manager identity)
    """
    pin_global_tx_to_physical_connection: bool = False
    read_only_optimization: bool = False
    recover_batch_size: Optional[int] = None
    dialect: str = "mysql"
    host: str = "localhost"
    port: int = 3306
    database: str = ""

    @property
    def identity(self) -> tuple:
        """Database identity used by is_same_rm()."""
        return (self.host.lower(), self.port, self.database)

    def set_properties(self, properties: str) -> None:
        """
        Apply driver-style properties.

        Args:
            properties: "key=value" pairs separated by '&' or ';',
                e.g. "pinGlobalTxToPhysicalConnection=true"

        Raises:
            ValueError: Unknown property or malformed pair
        """
        known = {f.name for f in fields(self)}

        for pair in properties.replace(";", "&").split("&"):
            if not pair.strip():
                continue

            if "=" not in pair:
                raise ValueError(f"Malformed property: {pair!r}")

            key, value = pair.split("=", 1)
            key = key.strip()
            name = PROPERTY_NAMES.get(key, key)

            if name not in known:
                raise ValueError(f"Unknown property: {key}")

            setattr(self, name, _coerce(name, value))

    @classmethod
    def from_properties(cls, properties: str) -> 'ResourceManagerConfig':
        """
        Build configuration from driver-style properties.

        Args:
            properties: Property string

        Returns:
            ResourceManagerConfig
        """
        config = cls()
        config.set_properties(properties)
        return config

    @classmethod
    def from_config(cls, config: Config) -> 'ResourceManagerConfig':
        """
        Build configuration from the application Config.

        Args:
            config: Loaded configuration

        Returns:
            ResourceManagerConfig
        """
        defaults = cls()

        return cls(
            pin_global_tx_to_physical_connection=bool(config.get(
                "xa.pin_global_tx_to_physical_connection",
                defaults.pin_global_tx_to_physical_connection,
            )),
            read_only_optimization=bool(config.get(
                "xa.read_only_optimization",
                defaults.read_only_optimization,
            )),
            recover_batch_size=config.get(
                "xa.recover_batch_size",
                defaults.recover_batch_size,
            ),
            dialect=config.get("xa.dialect", defaults.dialect),
            host=config.get("database.host", defaults.host),
            port=int(config.get("database.port", defaults.port)),
            database=config.get("database.name", defaults.database),
        )
