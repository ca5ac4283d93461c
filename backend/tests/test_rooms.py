"""Tests for room membership and fan-out."""
import asyncio

import pytest

from marketchat.chat.errors import AuthorizationError
from marketchat.chat.rooms import RoomRouter
from marketchat.chat.schemas import Role

ROOM = "chat_buyer-1_seller-1"


class TestJoin:
    """Tests for join/leave and authorization."""

    @pytest.mark.asyncio
    async def test_parties_can_join(self, hub, connect, store):
        await store.get_or_create_chat("buyer-1", "seller-1")
        buyer, _ = await connect("buyer-1", Role.BUYER)
        seller, _ = await connect("seller-1", Role.SELLER)

        room = await hub.rooms.join(buyer.connection_id, ROOM)
        await hub.rooms.join(seller.connection_id, ROOM)

        assert room.id == ROOM
        assert hub.rooms.get_subscribers(ROOM) == [buyer.connection_id, seller.connection_id]
        assert hub.rooms.rooms_of(buyer.connection_id) == {ROOM}

    @pytest.mark.asyncio
    async def test_outsider_is_refused(self, hub, connect, store):
        await store.get_or_create_chat("buyer-1", "seller-1")
        outsider, _ = await connect("buyer-2", Role.BUYER)

        with pytest.raises(AuthorizationError):
            await hub.rooms.join(outsider.connection_id, ROOM)
        assert hub.rooms.get_room_size(ROOM) == 0

    @pytest.mark.asyncio
    async def test_unknown_room_is_refused(self, hub, connect):
        buyer, _ = await connect("buyer-1", Role.BUYER)
        with pytest.raises(AuthorizationError):
            await hub.rooms.join(buyer.connection_id, "chat_buyer-1_ghost")

    @pytest.mark.asyncio
    async def test_admin_refused_without_override(self, hub, connect, store):
        await store.get_or_create_chat("buyer-1", "seller-1")
        admin, _ = await connect("admin-1", Role.ADMIN)
        with pytest.raises(AuthorizationError):
            await hub.rooms.join(admin.connection_id, ROOM)

    @pytest.mark.asyncio
    async def test_admin_admitted_with_override(self, hub, connect, store):
        await store.get_or_create_chat("buyer-1", "seller-1")
        admin, _ = await connect("admin-1", Role.ADMIN)
        hub.rooms.admin_override = True

        await hub.rooms.join(admin.connection_id, ROOM)
        _, acting_role = await hub.rooms.authorize(admin, ROOM)
        assert acting_role == Role.ADMIN
        assert hub.rooms.is_joined(admin.connection_id, ROOM)

    @pytest.mark.asyncio
    async def test_double_join_does_not_duplicate_delivery(self, hub, connect, store):
        await store.get_or_create_chat("buyer-1", "seller-1")
        buyer, buyer_t = await connect("buyer-1", Role.BUYER)

        await hub.rooms.join(buyer.connection_id, ROOM)
        await hub.rooms.join(buyer.connection_id, ROOM)
        assert hub.rooms.get_room_size(ROOM) == 1

        await hub.rooms.broadcast(ROOM, {"type": "ping"})
        assert buyer_t.of_type("ping") == [{"type": "ping"}]

    @pytest.mark.asyncio
    async def test_leave_is_idempotent(self, hub, connect, store):
        await store.get_or_create_chat("buyer-1", "seller-1")
        buyer, _ = await connect("buyer-1", Role.BUYER)
        await hub.rooms.join(buyer.connection_id, ROOM)

        assert hub.rooms.leave(buyer.connection_id, ROOM) is True
        assert hub.rooms.leave(buyer.connection_id, ROOM) is False
        assert hub.rooms.rooms_of(buyer.connection_id) == set()
        assert ROOM not in hub.rooms.subscribers

    @pytest.mark.asyncio
    async def test_disconnect_leaves_all_rooms(self, hub, connect, store):
        await store.get_or_create_chat("buyer-1", "seller-1")
        await store.get_or_create_chat("buyer-1", "seller-2")
        buyer, _ = await connect("buyer-1", Role.BUYER)
        await hub.rooms.join(buyer.connection_id, ROOM)
        await hub.rooms.join(buyer.connection_id, "chat_buyer-1_seller-2")

        await hub.connections.disconnect(buyer.connection_id)
        assert hub.rooms.get_room_size(ROOM) == 0
        assert hub.rooms.get_room_size("chat_buyer-1_seller-2") == 0


class TestBroadcast:
    """Tests for fan-out semantics."""

    @pytest.mark.asyncio
    async def test_broadcast_excludes_sender_and_other_rooms(self, hub, connect, store):
        await store.get_or_create_chat("buyer-1", "seller-1")
        await store.get_or_create_chat("buyer-2", "seller-1")
        buyer, buyer_t = await connect("buyer-1", Role.BUYER)
        seller, seller_t = await connect("seller-1", Role.SELLER)
        other, other_t = await connect("buyer-2", Role.BUYER)
        await hub.rooms.join(buyer.connection_id, ROOM)
        await hub.rooms.join(seller.connection_id, ROOM)
        await hub.rooms.join(other.connection_id, "chat_buyer-2_seller-1")

        delivered = await hub.rooms.broadcast(
            ROOM, {"type": "ping"}, exclude_connection_id=buyer.connection_id
        )
        assert delivered == 1
        assert seller_t.of_type("ping")
        assert not buyer_t.of_type("ping")
        assert not other_t.of_type("ping")

    @pytest.mark.asyncio
    async def test_failed_subscriber_is_pruned(self, hub, connect, store):
        await store.get_or_create_chat("buyer-1", "seller-1")
        buyer, buyer_t = await connect("buyer-1", Role.BUYER)
        seller, seller_t = await connect("seller-1", Role.SELLER)
        await hub.rooms.join(buyer.connection_id, ROOM)
        await hub.rooms.join(seller.connection_id, ROOM)
        seller_t.fail = True

        delivered = await hub.rooms.broadcast(ROOM, {"type": "ping"})
        assert delivered == 1
        assert buyer_t.of_type("ping")
        assert hub.rooms.get_subscribers(ROOM) == [buyer.connection_id]

    @pytest.mark.asyncio
    async def test_pruning_last_subscriber_drops_room_lock(self, hub, connect, store):
        await store.get_or_create_chat("buyer-1", "seller-1")
        seller, seller_t = await connect("seller-1", Role.SELLER)
        await hub.rooms.join(seller.connection_id, ROOM)
        seller_t.fail = True

        assert await hub.rooms.broadcast(ROOM, {"type": "ping"}) == 0
        assert ROOM not in hub.rooms.subscribers
        assert ROOM not in hub.rooms._locks

    @pytest.mark.asyncio
    async def test_broadcast_to_empty_room(self, hub):
        assert await hub.rooms.broadcast("chat_nobody_here", {"type": "ping"}) == 0

    @pytest.mark.asyncio
    async def test_concurrent_broadcasts_keep_order(self, hub, connect, store):
        await store.get_or_create_chat("buyer-1", "seller-1")
        seller, seller_t = await connect("seller-1", Role.SELLER)
        await hub.rooms.join(seller.connection_id, ROOM)

        await asyncio.gather(*[
            hub.rooms.broadcast(ROOM, {"type": "seq", "n": n}) for n in range(20)
        ])
        assert [e["n"] for e in seller_t.of_type("seq")] == list(range(20))


def test_router_defaults(hub):
    assert isinstance(hub.rooms, RoomRouter)
    assert hub.rooms.admin_override is False
