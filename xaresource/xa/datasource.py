"""
XA datasource.

Hands out XAConnections and owns the state their resources share: the
branch registry, the connection binding map and the pin table. That state
lives exactly as long as the datasource.
"""

from dataclasses import fields, replace
from typing import Callable, Dict, Optional

from xaresource.xa.binding import ConnectionBindingManager
from xaresource.xa.config import ResourceManagerConfig
from xaresource.xa.connection import Connection, XAConnection
from xaresource.xa.dialect import XADialect, create_dialect
from xaresource.xa.state import BranchStateManager
from xaresource.utils.config import Config, get_config
from xaresource.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


class XADataSource:
    """
    Source of XA connections to one database.

    Example:
        datasource = XADataSource(
            connection_factory=open_mysql_connection,
            config=ResourceManagerConfig.from_properties(
                "pinGlobalTxToPhysicalConnection=true"
            ),
        )

        xa_conn = datasource.get_xa_connection()
    """

    def __init__(
        self,
        connection_factory: Callable[[], Connection],
        config: Optional[ResourceManagerConfig] = None,
        **kwargs,
    ):
        """
        Initialize datasource.

        Args:
            connection_factory: Opens a new physical connection
            config: Resource manager configuration
            **kwargs: Config overrides
        """
        config = config or ResourceManagerConfig()

        known = {f.name for f in fields(config)}
        for key in kwargs:
            if key not in known:
                raise ValueError(f"Unknown configuration option: {key}")

        self.config = replace(config, **kwargs)

        self._connection_factory = connection_factory
        self.dialect: XADialect = create_dialect(self.config.dialect)
        self.branches = BranchStateManager()
        self.bindings = ConnectionBindingManager(
            pin_global_tx=self.config.pin_global_tx_to_physical_connection,
        )

        logger.info(
            "XADataSource initialized",
            host=self.config.host,
            port=self.config.port,
            database=self.config.database,
            pin_global_tx=self.config.pin_global_tx_to_physical_connection,
            dialect=self.dialect.name,
        )

    @classmethod
    def from_config(
        cls,
        connection_factory: Callable[[], Connection],
        config: Optional[Config] = None,
    ) -> 'XADataSource':
        """
        Build a datasource from the application configuration.

        Also configures logging from the logging section.

        Args:
            connection_factory: Opens a new physical connection
            config: Loaded configuration (global instance if None)

        Returns:
            XADataSource
        """
        config = config or get_config()

        configure_logging(
            log_level=config.get("logging.level", "INFO"),
            log_format=config.get("logging.format", "json"),
        )

        return cls(connection_factory, ResourceManagerConfig.from_config(config))

    def set_properties(self, properties: str) -> None:
        """
        Apply driver-style properties to a live datasource.

        Pinning and read-only optimization take effect immediately for every
        connection. Dialect and recover batch size only apply to XA
        connections opened afterwards.

        Args:
            properties: Property string, e.g. "pinGlobalTxToPhysicalConnection=true"

        Raises:
            ValueError: Unknown property or malformed pair
        """
        config = replace(self.config)
        config.set_properties(properties)
        dialect = create_dialect(config.dialect)

        self.config = config
        self.dialect = dialect
        self.bindings.set_pinning(config.pin_global_tx_to_physical_connection)

        logger.info("XADataSource properties updated", properties=properties)

    def get_xa_connection(self) -> XAConnection:
        """
        Open a new XA connection.

        Returns:
            XAConnection
        """
        physical = self._connection_factory()
        return XAConnection(physical, self)

    def release(self, xa_connection: XAConnection) -> None:
        """
        Drop the state held for a closing XA connection.

        Unprepared branches die with the session on the server. Prepared
        branches survive there and are found again through recover().

        Args:
            xa_connection: Closing XA connection
        """
        physical = xa_connection.physical
        dropped = self.branches.records_for(physical)

        for record in dropped:
            self.branches.discard(record.xid)

        self.bindings.release_connection(physical)

        if dropped:
            logger.info(
                "Dropped branches of closed connection",
                connection_id=xa_connection.connection_id,
                branches=[str(record.xid) for record in dropped],
            )

    def get_stats(self) -> Dict:
        """
        Get datasource statistics.

        Returns:
            Statistics dict
        """
        return {
            "branches": self.branches.get_stats(),
            "bindings": self.bindings.get_stats(),
        }
