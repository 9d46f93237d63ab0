"""
Ephemeral port-forward tunnels to a pod.

`open_tunnel` binds a free local port on 127.0.0.1 and forwards every
connection accepted there to `remote_port` inside the pod, using the
Kubernetes port-forward stream. Forwarding runs on a background thread
until the session is closed.

    local_port, session = open_tunnel(core_v1, "ns", "pod-0", 9095, timeout=30)
    with session:
        requests.post(f"http://localhost:{local_port}/coverage", ...)
"""

import select
import socket
import ssl
import threading
from enum import StrEnum
from typing import Callable, Optional, Tuple

from kubernetes import client
from kubernetes.stream import ws_client
from opentelemetry import trace
from websocket import WebSocket

from lib.base_logger import logger
from lib.podcov import TransportError

TRACER = trace.get_tracer("podcov")

LOCALHOST = "127.0.0.1"
POLL_INTERVAL = 0.2
BUFFER_SIZE = 64 * 1024
CLOSE_GRACE_PERIOD = 2

# returns a kubernetes.stream.ws_client.PortForward for (pod, namespace, remote port)
Connector = Callable[[str, str, int], object]


class SessionState(StrEnum):
    PENDING = "pending"
    READY = "ready"
    CLOSED = "closed"


def _ssl_options(configuration: client.Configuration, url: str) -> dict:
    if url.startswith("wss://") and configuration.verify_ssl:
        ssl_opts = {"cert_reqs": ssl.CERT_REQUIRED}
        if configuration.ssl_ca_cert:
            ssl_opts["ca_certs"] = configuration.ssl_ca_cert
        if configuration.assert_hostname is not None:
            ssl_opts["check_hostname"] = configuration.assert_hostname
    else:
        ssl_opts = {"cert_reqs": ssl.CERT_NONE}

    if configuration.cert_file:
        ssl_opts["certfile"] = configuration.cert_file
    if configuration.key_file:
        ssl_opts["keyfile"] = configuration.key_file
    if configuration.tls_server_name:
        ssl_opts["server_hostname"] = configuration.tls_server_name
    return ssl_opts


def dial_websocket(
    configuration: client.Configuration, url: str, headers: Optional[dict], timeout: Optional[float]
) -> WebSocket:
    """Opens the port-forward websocket. `timeout` bounds both the TCP connect and the upgrade handshake."""
    header = ["sec-websocket-protocol: v4.channel.k8s.io"]
    if headers and "authorization" in headers:
        header.append(f"authorization: {headers['authorization']}")
    connect_opt = {"header": header, "timeout": timeout}
    if configuration.proxy or configuration.proxy_headers:
        connect_opt = ws_client.websocket_proxycare(connect_opt, configuration, url, headers)

    websocket = WebSocket(sslopt=_ssl_options(configuration, url), skip_utf8_validation=False, enable_multithread=True)
    websocket.connect(url, **connect_opt)
    # PortForward reads only after select() reports data, the dial timeout must not outlive the handshake
    websocket.settimeout(None)
    return websocket


def kubernetes_connector(core_v1: client.CoreV1Api, timeout: Optional[float] = None) -> Connector:
    """
    Dials through the API server's pod port-forward endpoint.

    `kubernetes.stream.portforward` connects without any time limit, so the websocket is
    dialed here instead: the generated API method builds the URL and auth headers and hands
    them to `request`, which is replaced on a private ApiClient by our own dial.
    """

    def connect(pod_name: str, namespace: str, remote_port: int):
        api_client = client.ApiClient(configuration=core_v1.api_client.configuration)

        def request(method, url, query_params=None, headers=None, **kwargs):
            ws_url = ws_client.get_websocket_url(url, query_params)
            websocket = dial_websocket(api_client.configuration, ws_url, headers, timeout)
            return ws_client.PortForward(websocket, [remote_port])

        api_client.request = request
        return client.CoreV1Api(api_client).connect_get_namespaced_pod_portforward(
            pod_name, namespace, ports=str(remote_port), _preload_content=False
        )

    return connect


class TransportSession:
    def __init__(self, namespace: str, pod_name: str, remote_port: int, connector: Connector):
        self.namespace = namespace
        self.pod_name = pod_name
        self.remote_port = remote_port
        self.local_port: Optional[int] = None
        self.state = SessionState.PENDING

        self._connector = connector
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._error: Optional[BaseException] = None
        self._listener: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._forwards = []
        self._pending_forward = None

    def __enter__(self) -> "TransportSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"TransportSession({self.namespace}/{self.pod_name}:{self.remote_port} -> {self.local_port}, {self.state})"

    @property
    def forwarding(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def open(self, timeout: float) -> int:
        """Starts forwarding and blocks until the tunnel is ready. Returns the local port."""
        if self.state != SessionState.PENDING:
            raise TransportError(f"cannot open a session in state {self.state}")

        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind((LOCALHOST, 0))
        self._listener.listen()
        self._listener.settimeout(POLL_INTERVAL)
        self.local_port = self._listener.getsockname()[1]

        self._thread = threading.Thread(
            name=f"podcov port forward {self.pod_name}:{self.remote_port}", target=self._serve, daemon=True
        )
        self._thread.start()

        if not self._ready.wait(timeout):
            self.close()
            raise TransportError(
                f"timeout after {timeout}s waiting for port forward to {self.namespace}/{self.pod_name}:{self.remote_port}"
            )
        if self._error is not None:
            error = self._error
            self.close()
            raise TransportError(
                f"failed to forward port {self.remote_port} of pod {self.namespace}/{self.pod_name}: {error}"
            ) from error

        with self._lock:
            if self.state == SessionState.PENDING:
                self.state = SessionState.READY
        logger.info(f"Port forward ready: localhost:{self.local_port} -> {self.pod_name}:{self.remote_port}")
        return self.local_port

    def close(self):
        with self._lock:
            if self.state == SessionState.CLOSED:
                return
            self.state = SessionState.CLOSED
            self._stop.set()
            forwards = list(self._forwards)
            self._pending_forward = None

        if self._listener is not None:
            self._listener.close()
        for pf in forwards:
            _close_quietly(pf)
        # a thread still dialing closes its forward itself once the dial returns
        if self._ready.is_set() and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(CLOSE_GRACE_PERIOD)
        logger.debug(f"Closed {self!r}")

    def _connect(self):
        pf = self._connector(self.pod_name, self.namespace, self.remote_port)
        with self._lock:
            if self._stop.is_set():
                # closed while we were dialing
                _close_quietly(pf)
                return None
            self._forwards.append(pf)
        return pf

    def _serve(self):
        try:
            pf = self._connect()
        except Exception as e:
            self._error = e
            self._ready.set()
            return
        if pf is None:
            return

        with self._lock:
            self._pending_forward = pf
        self._ready.set()

        while not self._stop.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                # listener closed
                break

            with self._lock:
                pf, self._pending_forward = self._pending_forward, None
            try:
                if pf is None:
                    pf = self._connect()
                    if pf is None:
                        conn.close()
                        break
            except Exception as e:
                logger.warning(f"Port forward to {self.pod_name}:{self.remote_port} failed: {e}")
                conn.close()
                continue

            threading.Thread(target=self._pump, args=(conn, pf), daemon=True).start()

    def _pump(self, conn: socket.socket, pf):
        remote = pf.socket(self.remote_port)
        remote.setblocking(True)
        conn.setblocking(True)
        peers = {conn.fileno(): remote, remote.fileno(): conn}
        try:
            while not self._stop.is_set():
                readable, _, _ = select.select([conn, remote], [], [], POLL_INTERVAL)
                for source in readable:
                    data = source.recv(BUFFER_SIZE)
                    if not data:
                        return
                    peers[source.fileno()].sendall(data)
        except OSError as e:
            logger.debug(f"Port forward connection closed: {e}")
        finally:
            conn.close()
            error = pf.error(self.remote_port)
            if error:
                logger.warning(f"Port forward to {self.pod_name}:{self.remote_port} reported: {error}")
            with self._lock:
                if pf in self._forwards:
                    self._forwards.remove(pf)
            _close_quietly(pf)


def _close_quietly(pf):
    try:
        pf.close()
    except Exception as e:
        logger.debug(f"Error while closing port forward: {e}")


@TRACER.start_as_current_span("open_tunnel")
def open_tunnel(
    core_v1: client.CoreV1Api,
    namespace: str,
    pod_name: str,
    remote_port: int,
    timeout: float,
    connector: Optional[Connector] = None,
) -> Tuple[int, TransportSession]:
    """Opens a tunnel to `remote_port` of the pod. The caller owns the returned session and must close it."""
    span = trace.get_current_span()
    span.set_attribute("podcov.pod", pod_name)
    span.set_attribute("podcov.remote_port", remote_port)

    session = TransportSession(namespace, pod_name, remote_port, connector or kubernetes_connector(core_v1, timeout))
    local_port = session.open(timeout)
    span.set_attribute("podcov.local_port", local_port)
    return local_port, session
