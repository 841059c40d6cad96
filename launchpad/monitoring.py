"""
Prometheus metrics for the pool ledger.

Each Monitor owns its registry, so several ledgers (or tests) in one
process never collide on metric names.
"""
import errno
import logging
import socket
import threading
import time
from decimal import Decimal
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIServer, make_server

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.exposition import make_wsgi_app

from launchpad.config import MonitoringConfig

logger = logging.getLogger(__name__)

BIND_ATTEMPTS = 5
BIND_RETRY_DELAY = 2  # seconds


class MetricsHTTPServer(ThreadingMixIn, WSGIServer):
    """Serves /metrics from daemon threads so scrapes never block trading."""
    allow_reuse_address = True
    daemon_threads = True


class Monitor:
    """Trade and pool metrics kept in an isolated registry."""

    def __init__(self, host="127.0.0.1", port=9090):
        self.host = host
        self.port = port
        self._server = None
        self._serve_thread = None

        self.registry = CollectorRegistry()

        self.trades = Counter('launchpad_trades_total', 'Trades submitted to the ledger', ['side', 'status'], registry=self.registry)
        self.volume = Counter('launchpad_trade_volume_cnpy_total', 'CNPY volume of applied trades', ['side'], registry=self.registry)
        self.pool_price = Gauge('launchpad_pool_price', 'Spot price of a pool in CNPY per token', ['chain_id'], registry=self.registry)
        self.pool_reserve = Gauge('launchpad_pool_cnpy_reserve', 'CNPY reserve of a pool', ['chain_id'], registry=self.registry)
        self.trade_latency = Histogram('launchpad_trade_latency_seconds', 'Time to price and commit a trade', registry=self.registry)

    @classmethod
    def from_config(cls, config: MonitoringConfig) -> 'Monitor':
        monitor = cls(host=config.host, port=config.port)
        if config.enabled:
            monitor.start_server()
        return monitor

    @property
    def serving(self) -> bool:
        return self._server is not None

    def start_server(self):
        """
        Expose the registry over HTTP on a background thread.

        Binding is retried while the port is still held by a previous
        process; any other socket error is raised at once.
        """
        app = make_wsgi_app(self.registry)
        self._server = self._bind(app)
        # Port 0 binds an ephemeral port
        self.port = self._server.server_port

        self._serve_thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._serve_thread.start()
        logger.info(f"Metrics available at http://{self.host}:{self.port}/metrics")

    def _bind(self, app) -> MetricsHTTPServer:
        for attempt in range(1, BIND_ATTEMPTS + 1):
            try:
                server = make_server(self.host, self.port, app, MetricsHTTPServer)
            except OSError as e:
                if e.errno != errno.EADDRINUSE:
                    raise
                if attempt == BIND_ATTEMPTS:
                    logger.error(f"Could not bind metrics port {self.port} after {BIND_ATTEMPTS} attempts")
                    raise
                logger.warning(f"Metrics port {self.port} busy, retry {attempt}/{BIND_ATTEMPTS - 1} in {BIND_RETRY_DELAY}s")
                time.sleep(BIND_RETRY_DELAY)
                continue
            server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            return server

    def stop_server(self):
        if not self._server:
            return
        self._server.shutdown()
        self._server.server_close()
        self._serve_thread.join()
        self._server = None
        self._serve_thread = None
        logger.info("Metrics server stopped")

    def record_trade(self, side: str, cnpy_amount: Decimal, latency: float):
        self.trades.labels(side=side, status='applied').inc()
        self.volume.labels(side=side).inc(float(cnpy_amount))
        self.trade_latency.observe(latency)

    def record_rejection(self, side: str):
        self.trades.labels(side=side, status='rejected').inc()

    def update_pool(self, chain_id: str, price: Decimal, cnpy_reserve: Decimal):
        # Gauges are floats; conversion happens only here
        self.pool_price.labels(chain_id=chain_id).set(float(price))
        self.pool_reserve.labels(chain_id=chain_id).set(float(cnpy_reserve))
