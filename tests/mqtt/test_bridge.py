"""Tests de extremo a extremo del bridge con brokers simulados."""

import asyncio

import pytest

from modules.mqtt_forwarder import Bridge, ConnectionState

from conftest import wait_until


async def start_bridge(config, brokers) -> Bridge:
    bridge = Bridge(config, client_factory=brokers.factory)
    await bridge.start()
    await wait_until(lambda: bridge.local.is_subscribed and bridge.remote.is_connected)
    return bridge


class TestBridgeForwarding:
    """Tests de reenvío local -> remoto."""

    @pytest.mark.asyncio
    async def test_end_to_end_forwarding(self, config, brokers):
        """Test reenvío completo local -> remoto con prefijo."""
        bridge = await start_bridge(config, brokers)

        try:
            assert brokers.local.subscriptions == ["eu868/gateway/+/event/up"]

            brokers.local.client.deliver("eu868/gateway/abc/event/up", b'{"x":1}')
            await wait_until(lambda: brokers.remote.published)

            assert brokers.remote.published == [
                ("bridge/siteA/eu868/gateway/abc/event/up", b'{"x":1}')
            ]
            assert bridge.pipeline.stats.forwarded == 1
        finally:
            await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_message_order_preserved(self, config, brokers):
        """Test los mensajes se reenvían en orden de llegada."""
        bridge = await start_bridge(config, brokers)

        try:
            for i in range(20):
                brokers.local.client.deliver(f"eu868/gateway/gw{i}/event/up", str(i).encode())
            await wait_until(lambda: len(brokers.remote.published) == 20)

            assert [payload for _, payload in brokers.remote.published] == [
                str(i).encode() for i in range(20)
            ]
        finally:
            await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_remote_outage_drops_messages(self, config, brokers):
        """Durante la caída del remoto se descarta; al volver solo se reenvía lo nuevo."""
        bridge = await start_bridge(config, brokers)

        try:
            brokers.local.client.deliver("eu868/gateway/a/event/up", b"before")
            await wait_until(lambda: len(brokers.remote.published) == 1)

            brokers.remote.fail_connects = 1000
            brokers.remote.client.drop()
            await wait_until(lambda: not bridge.remote.is_connected)

            for i in range(3):
                brokers.local.client.deliver("eu868/gateway/b/event/up", f"lost-{i}".encode())
            await wait_until(lambda: bridge.pipeline.stats.dropped == 3)

            # El lado local no se ve afectado
            assert bridge.local.state == ConnectionState.CONNECTED
            assert brokers.local.connect_calls == 1

            brokers.remote.fail_connects = 0
            await wait_until(lambda: bridge.remote.is_connected, timeout=3.0)

            brokers.local.client.deliver("eu868/gateway/c/event/up", b"after")
            await wait_until(lambda: len(brokers.remote.published) == 2)

            assert brokers.remote.published == [
                ("bridge/siteA/eu868/gateway/a/event/up", b"before"),
                ("bridge/siteA/eu868/gateway/c/event/up", b"after"),
            ]
        finally:
            await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_local_outage_does_not_affect_remote(self, config, brokers):
        """Test caída local no afecta al lado remoto."""
        bridge = await start_bridge(config, brokers)

        try:
            brokers.local.client.drop()
            await wait_until(lambda: brokers.local.connect_calls == 2 and bridge.local.is_subscribed)

            assert brokers.remote.connect_calls == 1
            assert bridge.remote.is_connected

            brokers.local.client.deliver("eu868/gateway/z/event/up", b"again")
            await wait_until(lambda: len(brokers.remote.published) == 1)
        finally:
            await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_message_before_remote_ready_is_dropped(self, config, brokers):
        """Test mensaje recibido antes de conectar el remoto se descarta."""
        brokers.remote.fail_connects = 1000
        bridge = Bridge(config, client_factory=brokers.factory)

        try:
            await bridge.start()
            await wait_until(lambda: bridge.local.is_subscribed)

            brokers.local.client.deliver("eu868/gateway/a/event/up", b"early")
            await wait_until(lambda: bridge.pipeline.stats.dropped == 1)

            assert brokers.remote.published == []
        finally:
            await bridge.shutdown()


class TestBridgeShutdown:
    """Tests para el apagado coordinado."""

    @pytest.mark.asyncio
    async def test_shutdown_stops_both_sides(self, config, brokers):
        """Test apagado detiene ambos lados."""
        bridge = await start_bridge(config, brokers)

        await bridge.shutdown()

        assert bridge.local.state == ConnectionState.DISCONNECTED
        assert bridge.remote.state == ConnectionState.DISCONNECTED
        assert brokers.local.disconnects == 1
        assert brokers.remote.disconnects == 1
        assert bridge.shutdown_requested
        assert not bridge.is_running

    @pytest.mark.asyncio
    async def test_shutdown_during_reconnect(self, config, brokers):
        """Test apagado durante una reconexión pendiente."""
        brokers.remote.fail_connects = 1000
        bridge = Bridge(config, client_factory=brokers.factory)
        await bridge.start()
        await wait_until(lambda: bridge.remote.state == ConnectionState.RECONNECT_SCHEDULED)

        await bridge.shutdown()
        calls = brokers.remote.connect_calls
        await asyncio.sleep(0.2)

        assert brokers.remote.connect_calls == calls
        assert bridge.remote.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, config, brokers):
        """Test apagado idempotente."""
        bridge = await start_bridge(config, brokers)

        await bridge.shutdown()
        await bridge.shutdown()

        assert brokers.local.disconnects == 1

    @pytest.mark.asyncio
    async def test_shutdown_before_start(self, config, brokers):
        """Test apagado sin haber iniciado."""
        bridge = Bridge(config, client_factory=brokers.factory)

        await bridge.shutdown()

        assert bridge.shutdown_requested
        assert brokers.local.connect_calls == 0

    @pytest.mark.asyncio
    async def test_request_shutdown_wakes_waiter(self, config, brokers):
        """Test request_shutdown despierta a wait_for_shutdown."""
        bridge = await start_bridge(config, brokers)

        try:
            waiter = asyncio.create_task(bridge.wait_for_shutdown())
            bridge.request_shutdown(15)
            await asyncio.wait_for(waiter, timeout=1.0)

            assert bridge.shutdown_requested
        finally:
            await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, config, brokers):
        """Test start idempotente."""
        bridge = await start_bridge(config, brokers)

        try:
            local = bridge.local
            await bridge.start()

            assert bridge.local is local
            assert brokers.local.connect_calls == 1
        finally:
            await bridge.shutdown()


class TestBridgeStatus:
    """Tests para el estado del bridge."""

    @pytest.mark.asyncio
    async def test_status(self, config, brokers):
        """Test estado del bridge en marcha."""
        bridge = await start_bridge(config, brokers)

        try:
            brokers.local.client.deliver("eu868/gateway/abc/event/up", b"1")
            await wait_until(lambda: bridge.pipeline.stats.forwarded == 1)

            status = bridge.status()

            assert status["running"] is True
            assert status["local"]["state"] == "connected"
            assert status["remote"]["state"] == "connected"
            assert status["pipeline"]["topic_prefix"] == "bridge/siteA"
            assert status["pipeline"]["forwarded"] == 1
        finally:
            await bridge.shutdown()

    def test_status_before_start(self, config):
        """Test estado antes de iniciar."""
        bridge = Bridge(config)

        status = bridge.status()

        assert status["running"] is False
        assert status["local"] is None
        assert status["pipeline"]["forwarded"] == 0
