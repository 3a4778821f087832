import json
from datetime import datetime

import redis

from constants import PRESENCE_TTL, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT
from logging_config import get_logger
from peer_registry import Peer
from redis_keys import REDIS_META_KEY, REDIS_PEER_KEY, REDIS_PEERS_KEY, REDIS_ROOM_CHANNEL
from room_registry import PEER_ADDED, PEER_REMOVED, ROOM_CREATED, ROOM_DELETED, Room, RoomRegistry

logger = get_logger(__name__)


def _to_hash(data: dict) -> dict:
    # Redis hashes only hold strings; nested values are stored as JSON
    result = {}
    for k, v in data.items():
        if v is None:
            continue
        if isinstance(v, (dict, list)):
            result[k] = json.dumps(v)
        else:
            result[k] = str(v)
    return result


class RedisBackend:
    """Mirrors room and peer presence into Redis for other services to read.

    The in-process registries stay the source of truth; Redis only ever
    receives copies, so a Redis outage degrades the mirror and nothing else.
    """

    def __init__(self, redis_client: redis.Redis, ttl: int = PRESENCE_TTL):
        self.redis_client = redis_client
        self.ttl = ttl

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    def save_room(self, room_id: str, room_data: dict):
        key = REDIS_META_KEY.format(slug=room_id)
        self.redis_client.hset(key, mapping=_to_hash(room_data))
        if self.ttl:
            self.redis_client.expire(key, self.ttl)
        logger.debug(f"Room {room_id} mirrored to {key}")

    def get_room(self, room_id: str):
        room_data = self.redis_client.hgetall(REDIS_META_KEY.format(slug=room_id))
        if not room_data:
            return None
        result = {}
        for k, v in room_data.items():
            try:
                result[k] = json.loads(v)
            except (json.JSONDecodeError, TypeError):
                result[k] = v
        return result

    def delete_room(self, room_id: str, peer_ids=()):
        deleted = self.redis_client.delete(
            REDIS_META_KEY.format(slug=room_id),
            REDIS_PEERS_KEY.format(slug=room_id),
            *(REDIS_PEER_KEY.format(peer_id=peer_id) for peer_id in peer_ids),
        )
        logger.debug(f"Room {room_id} removed from mirror ({deleted} keys)")

    def add_peer(self, room_id: str, peer_id: str, peer_data: dict):
        peers_key = REDIS_PEERS_KEY.format(slug=room_id)
        peer_key = REDIS_PEER_KEY.format(peer_id=peer_id)
        self.redis_client.sadd(peers_key, peer_id)
        self.redis_client.hset(peer_key, mapping=_to_hash(peer_data))
        if self.ttl:
            self.redis_client.expire(peers_key, self.ttl)
            self.redis_client.expire(peer_key, self.ttl)
        logger.debug(f"Peer {peer_id} mirrored into room {room_id}")

    def remove_peer(self, room_id: str, peer_id: str):
        removed = self.redis_client.srem(REDIS_PEERS_KEY.format(slug=room_id), peer_id)
        deleted = self.redis_client.delete(REDIS_PEER_KEY.format(peer_id=peer_id))
        logger.debug(f"Peer {peer_id} removed from mirror of room {room_id}: set={removed}, metadata={deleted}")

    def get_peers_in_room(self, room_id: str):
        return self.redis_client.smembers(REDIS_PEERS_KEY.format(slug=room_id))

    def publish_event(self, room_id: str, event: dict):
        channel = REDIS_ROOM_CHANNEL.format(slug=room_id)
        subscribers = self.redis_client.publish(channel, json.dumps(event))
        logger.debug(f"Published '{event.get('type')}' to {channel}, {subscribers} subscribers")

    def attach(self, rooms: RoomRegistry):
        rooms.add_listener(ROOM_CREATED, self._on_room_created)
        rooms.add_listener(ROOM_DELETED, self._on_room_deleted)
        rooms.add_listener(PEER_ADDED, self._on_peer_added)
        rooms.add_listener(PEER_REMOVED, self._on_peer_removed)
        logger.info("Redis presence mirror attached to room registry")

    async def _on_room_created(self, room: Room):
        try:
            self.save_room(room.room_id, {
                "room_id": room.room_id,
                "name": room.name,
                "max_participants": room.max_participants,
                "created_at": room.created_at.isoformat(),
                "router_id": room.router.id,
            })
            self.publish_event(room.room_id, {
                "type": "room-created",
                "room_id": room.room_id,
                "timestamp": datetime.now().isoformat(),
            })
        except redis.RedisError as e:
            logger.warning(f"Failed to mirror creation of room {room.room_id}: {e}")

    async def _on_room_deleted(self, room: Room):
        try:
            self.delete_room(room.room_id, list(room.peers))
            self.publish_event(room.room_id, {
                "type": "room-deleted",
                "room_id": room.room_id,
                "timestamp": datetime.now().isoformat(),
            })
        except redis.RedisError as e:
            logger.warning(f"Failed to mirror deletion of room {room.room_id}: {e}")

    async def _on_peer_added(self, room: Room, peer: Peer):
        try:
            self.add_peer(room.room_id, peer.peer_id, {
                "peer_id": peer.peer_id,
                "room_id": room.room_id,
                "display_name": peer.display_name,
                "joined_at": peer.joined_at.isoformat(),
            })
            self.publish_event(room.room_id, {
                "type": "peer-joined",
                "peer_id": peer.peer_id,
                "display_name": peer.display_name,
                "peer_count": room.peer_count(),
                "timestamp": datetime.now().isoformat(),
            })
        except redis.RedisError as e:
            logger.warning(f"Failed to mirror peer {peer.peer_id} joining room {room.room_id}: {e}")

    async def _on_peer_removed(self, room: Room, peer: Peer):
        try:
            self.remove_peer(room.room_id, peer.peer_id)
            self.publish_event(room.room_id, {
                "type": "peer-left",
                "peer_id": peer.peer_id,
                "peer_count": room.peer_count(),
                "timestamp": datetime.now().isoformat(),
            })
        except redis.RedisError as e:
            logger.warning(f"Failed to mirror peer {peer.peer_id} leaving room {room.room_id}: {e}")


def create_redis_backend() -> RedisBackend:
    redis_client = redis.Redis(
        host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True
    )
    logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
    return RedisBackend(redis_client)
