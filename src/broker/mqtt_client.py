"""
MQTT Client Wrapper for the broker transport

Provides an async wrapper around paho-mqtt with connection management,
TLS/SSL support, subscriptions that survive reconnects, and a queue of
session events consumed by the event loop.

paho runs its network loop on its own thread and reconnects on its own
with a fixed delay. Every callback is handed to the event loop with
call_soon_threadsafe; nothing here touches asyncio objects from that thread.
"""

import asyncio
import logging
import os
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt

from core.config import BrokerTransportConfig


class ConnectionState(Enum):
    """MQTT connection states"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    RECONNECTING = "reconnecting"


class SessionEventType(Enum):
    """Things the broker session reports to the event loop"""
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    DISCONNECTED = "disconnected"
    MESSAGE = "message"


@dataclass
class SessionEvent:
    """One session event; topic and payload are set for MESSAGE"""
    type: SessionEventType
    topic: Optional[str] = None
    payload: bytes = b''
    reason: Optional[str] = None


CONNACK_ERRORS = {
    1: "Connection refused - incorrect protocol version",
    2: "Connection refused - invalid client identifier",
    3: "Connection refused - server unavailable",
    4: "Connection refused - bad username or password",
    5: "Connection refused - not authorized"
}

# Session events waiting for the transport; messages past this are dropped
EVENT_QUEUE_SIZE = 1000


def default_client_id() -> str:
    return f"meshtastic-irc-{os.getpid()}"


class MQTTClient:
    """
    Async MQTT client wrapper for paho-mqtt.

    Provides:
    - Async connection management with a bounded wait for CONNACK
    - TLS/SSL configuration
    - Fixed-delay automatic reconnection with resubscription
    - Connection state tracking and statistics
    - Message publishing with QoS support
    """

    def __init__(self, config: BrokerTransportConfig, logger: Optional[logging.Logger] = None):
        """
        Initialize MQTT client.

        Args:
            config: Broker settings (address, port, credentials, TLS,
                keep-alive, retry delay and client id)
            logger: Logger instance (optional)
        """
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.client_id = config.client_id or default_client_id()

        # Connection state
        self._state = ConnectionState.DISCONNECTED
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: asyncio.Queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self._connected_event = asyncio.Event()
        self._connect_failed_event = asyncio.Event()
        self._connect_error: Optional[str] = None
        self._disconnected_event = asyncio.Event()
        self._disconnected_event.set()  # Initially disconnected

        # topic -> qos, replayed on every (re)connect
        self._subscriptions: Dict[str, int] = {}

        # Statistics
        self.stats = {
            'connection_count': 0,
            'disconnection_count': 0,
            'connect_failures': 0,
            'messages_published': 0,
            'messages_received': 0,
            'publish_errors': 0,
            'messages_dropped': 0,
            'last_connect_time': None,
            'last_disconnect_time': None,
        }

        # Create paho-mqtt client
        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=True,
            protocol=mqtt.MQTTv311
        )

        # Set callbacks
        self._client.on_connect = self._on_connect
        self._client.on_connect_fail = self._on_connect_fail
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.on_publish = self._on_publish
        self._client.on_subscribe = self._on_subscribe

        self._configure_client()

    def _configure_client(self):
        """Configure the MQTT client with credentials, TLS and reconnect delay"""
        if self.config.username:
            self._client.username_pw_set(self.config.username, self.config.password)
            self.logger.debug(f"Set MQTT credentials for user: {self.config.username}")

        if self.config.tls_enabled:
            try:
                ca_cert = self.config.ca_cert
                self._client.tls_set(
                    ca_certs=ca_cert if ca_cert else None,
                    cert_reqs=ssl.CERT_REQUIRED if ca_cert else ssl.CERT_NONE,
                )

                # Disable hostname verification if no CA cert provided
                if not ca_cert:
                    self._client.tls_insecure_set(True)

                self.logger.info("TLS/SSL enabled for MQTT connection")

            except Exception as e:
                self.logger.error(f"Failed to configure TLS/SSL: {e}", exc_info=True)
                raise

        delay = max(1, int(self.config.retry_delay))
        self._client.reconnect_delay_set(min_delay=delay, max_delay=delay)

    @property
    def broker(self) -> str:
        return f"{self.config.address}:{self.config.port}"

    async def connect(self) -> bool:
        """
        Connect to the MQTT broker and start the network loop.

        Returns:
            True once the broker accepted the connection, False on refusal,
            network error or timeout
        """
        if self._state == ConnectionState.CONNECTED:
            self.logger.warning("Already connected to MQTT broker")
            return True

        self._loop = asyncio.get_running_loop()
        self._state = ConnectionState.CONNECTING
        self._connected_event.clear()
        self._connect_failed_event.clear()
        self._connect_error = None
        self._disconnected_event.clear()

        self.logger.info(f"Connecting to MQTT broker at {self.broker} as {self.client_id}")

        try:
            self._client.connect_async(
                host=self.config.address,
                port=self.config.port,
                keepalive=self.config.keepalive
            )
        except (ValueError, OSError) as e:
            self.logger.error(f"Invalid broker configuration: {e}")
            self._mark_disconnected()
            return False

        try:
            self._client.loop_start()
        except Exception as e:
            self.logger.error(f"Failed to start MQTT network loop: {e}", exc_info=True)
            self._mark_disconnected()
            return False

        outcomes = [
            asyncio.ensure_future(self._connected_event.wait()),
            asyncio.ensure_future(self._connect_failed_event.wait()),
        ]
        try:
            await asyncio.wait(outcomes, timeout=self.config.connect_timeout,
                               return_when=asyncio.FIRST_COMPLETED)
        finally:
            for outcome in outcomes:
                outcome.cancel()

        if self._connected_event.is_set():
            self.logger.info("Successfully connected to MQTT broker")
            return True

        if self._connect_failed_event.is_set():
            self.logger.error(f"Broker at {self.broker} refused the connection: {self._connect_error}")
        else:
            self.logger.error(
                f"Connection timeout after {self.config.connect_timeout} seconds - "
                f"broker may be unreachable at {self.broker}"
            )
        self._stop_loop()
        self._mark_disconnected()
        return False

    async def disconnect(self) -> None:
        """Disconnect from the MQTT broker and stop the network loop"""
        if self._state == ConnectionState.DISCONNECTED and self._loop is None:
            self.logger.debug("Already disconnected from MQTT broker")
            return

        self._state = ConnectionState.DISCONNECTING
        self.logger.info("Disconnecting from MQTT broker")

        try:
            self._client.disconnect()
            self._stop_loop()
            await asyncio.wait_for(self._disconnected_event.wait(), timeout=5.0)
            self.logger.info("Disconnected from MQTT broker")
        except asyncio.TimeoutError:
            self.logger.warning("Disconnect timeout, forcing disconnection")
        finally:
            self._mark_disconnected()
            self._loop = None

    def _stop_loop(self):
        try:
            self._client.loop_stop()
        except Exception as e:
            self.logger.warning(f"Error stopping network loop: {e}")

    def _mark_disconnected(self):
        self._state = ConnectionState.DISCONNECTED
        self._connected_event.clear()
        self._disconnected_event.set()

    def subscribe(self, topic: str, qos: int = 1) -> None:
        """
        Subscribe to a topic now and after every reconnect.
        """
        self._subscriptions[topic] = qos
        if self.is_connected():
            self._send_subscribe(topic, qos)

    def _send_subscribe(self, topic: str, qos: int):
        result, mid = self._client.subscribe(topic, qos)
        if result == mqtt.MQTT_ERR_SUCCESS:
            self.logger.debug(f"Subscribing to {topic} (qos={qos}, mid={mid})")
        else:
            self.logger.error(f"Subscribe to {topic} failed with return code: {result}")

    async def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = 1,
        retain: bool = False
    ) -> bool:
        """
        Publish a message to an MQTT topic.

        Returns:
            True if paho accepted the message, False otherwise
        """
        if not self.is_connected():
            self.logger.warning("Cannot publish: not connected to MQTT broker")
            self.stats['publish_errors'] += 1
            return False

        if not topic:
            self.logger.error("Cannot publish: empty topic")
            self.stats['publish_errors'] += 1
            return False

        if not isinstance(payload, bytes):
            self.logger.error(f"Cannot publish: payload must be bytes, got {type(payload)}")
            self.stats['publish_errors'] += 1
            return False

        try:
            result = self._client.publish(topic, payload, qos=qos, retain=retain)
        except (ValueError, OSError) as e:
            self.logger.error(f"Error publishing message: {e} - topic={topic}", exc_info=True)
            self.stats['publish_errors'] += 1
            return False

        if result.rc == mqtt.MQTT_ERR_SUCCESS:
            self.stats['messages_published'] += 1
            self.logger.debug(
                f"Published message to MQTT - "
                f"topic={topic}, "
                f"size={len(payload)} bytes, "
                f"qos={qos}, "
                f"retain={retain}, "
                f"mid={result.mid}"
            )
            return True

        if result.rc == mqtt.MQTT_ERR_NO_CONN:
            self.logger.error(f"Publish failed: not connected to broker - topic={topic}")
        elif result.rc == mqtt.MQTT_ERR_QUEUE_SIZE:
            self.logger.error(f"Publish failed: internal queue full - topic={topic}")
        else:
            self.logger.error(f"Publish failed with return code: {result.rc} - topic={topic}")
        self.stats['publish_errors'] += 1
        return False

    async def next_event(self) -> SessionEvent:
        """Wait for the next session event"""
        return await self._events.get()

    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def get_state(self) -> ConnectionState:
        return self._state

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()

    # paho callbacks, called on the network thread

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            for topic, qos in list(self._subscriptions.items()):
                self._send_subscribe(topic, qos)
            self._emit(SessionEvent(SessionEventType.CONNECTED))
            return

        value = getattr(reason_code, 'value', reason_code)
        error_msg = CONNACK_ERRORS.get(value, f"Connection refused - {reason_code}")
        self._emit(SessionEvent(SessionEventType.CONNECT_FAILED, reason=error_msg))

    def _on_connect_fail(self, client, userdata):
        self._emit(SessionEvent(SessionEventType.CONNECT_FAILED, reason="broker unreachable"))

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self._emit(SessionEvent(SessionEventType.DISCONNECTED, reason=str(reason_code)))

    def _on_message(self, client, userdata, message):
        self._emit(SessionEvent(SessionEventType.MESSAGE, topic=message.topic, payload=bytes(message.payload)))

    def _on_publish(self, client, userdata, mid, reason_code=None, properties=None):
        self.logger.debug(f"Message {mid} published successfully")

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        self.logger.debug(f"Subscription {mid} acknowledged: {reason_code_list}")

    def _emit(self, event: SessionEvent):
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._handle_event, event)
        except RuntimeError:
            self.logger.debug(f"Dropping MQTT {event.type.value} event: event loop is closed")

    # event loop side

    def _handle_event(self, event: SessionEvent):
        """Update state and statistics, then queue the event for the transport"""
        now = datetime.now(timezone.utc)

        if event.type is SessionEventType.CONNECTED:
            self._state = ConnectionState.CONNECTED
            self.stats['connection_count'] += 1
            self.stats['last_connect_time'] = now
            self.logger.info(
                f"MQTT connection established - "
                f"broker={self.broker}, "
                f"tls={'enabled' if self.config.tls_enabled else 'disabled'}, "
                f"username={self.config.username if self.config.username else 'anonymous'}"
            )
            self._connected_event.set()
            self._disconnected_event.clear()

        elif event.type is SessionEventType.CONNECT_FAILED:
            self.stats['connect_failures'] += 1
            self.logger.error(f"MQTT connection failed: {event.reason} - broker={self.broker}")
            if self._state == ConnectionState.CONNECTING:
                self._connect_error = event.reason
                self._connect_failed_event.set()
            else:
                self._state = ConnectionState.RECONNECTING

        elif event.type is SessionEventType.DISCONNECTED:
            self.stats['disconnection_count'] += 1
            self.stats['last_disconnect_time'] = now
            self._connected_event.clear()
            self._disconnected_event.set()
            if self._state == ConnectionState.DISCONNECTING:
                self.logger.info(f"MQTT disconnected cleanly - broker={self.broker}")
            else:
                self._state = ConnectionState.RECONNECTING
                self.logger.warning(
                    f"MQTT disconnected unexpectedly ({event.reason}) - "
                    f"broker={self.broker}, will attempt reconnection"
                )

        elif event.type is SessionEventType.MESSAGE:
            self.stats['messages_received'] += 1

        self._enqueue(event)

    def _enqueue(self, event: SessionEvent):
        """
        Queue an event for the transport.

        When the transport falls behind, new messages are dropped. State
        changes are always kept, displacing the oldest queued event.
        """
        if self._events.full():
            if event.type is SessionEventType.MESSAGE:
                self.stats['messages_dropped'] += 1
                self.logger.warning(f"MQTT event queue full, dropping message on {event.topic}")
                return
            dropped = self._events.get_nowait()
            if dropped.type is SessionEventType.MESSAGE:
                self.stats['messages_dropped'] += 1
            self.logger.warning(f"MQTT event queue full, dropping queued {dropped.type.value} event")
        self._events.put_nowait(event)
