# event_handler.py
import asyncio
import json
import logging
import redis
from uuid import uuid4
from typing import Dict, Any, Optional
from shared.models import Event
from shared.database import Database

logger = logging.getLogger(__name__)


class ChangeNotifier:
    async def notify(self, entity_type: str, entity_id: str, new_state: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError


def build_event(entity_type: str, entity_id: str, new_state: Dict[str, Any]) -> Event:
    return Event(
        event_id=str(uuid4()),
        event_type=f"{entity_type.capitalize()}Changed",
        payload={"entity_type": entity_type, "entity_id": entity_id, "state": new_state},
    )


async def emit(notifier: ChangeNotifier, entity_type: str, entity_id: str, new_state: Dict[str, Any]):
    """Notify after commit. The mutation is already durable, so delivery failures are only logged."""
    try:
        await notifier.notify(entity_type, entity_id, new_state)
    except Exception:
        logger.exception(f"Failed to publish change for {entity_type} {entity_id}")


class LoggingNotifier(ChangeNotifier):
    async def notify(self, entity_type, entity_id, new_state):
        event = build_event(entity_type, entity_id, new_state)
        logger.info(f"Change {event.event_type} for {entity_type} {entity_id}: {json.dumps(new_state, default=str)}")
        return event.event_id


class EventHandler(ChangeNotifier):
    def __init__(
        self,
        db: Optional[Database] = None,
        stream: str = "rideshare_stream",
        consumer_group: str = "Service_group",
        service_name: str = "Service",
        redis_host: str = "localhost",
        redis_port: int = 6379,
        redis_db: int = 0,
        client: Optional[redis.Redis] = None,
    ):
        self.db = db
        self.stream = stream
        self.consumer_group = consumer_group
        self.service_name = service_name

        self.r = client or redis.Redis(
            connection_pool=redis.ConnectionPool(
                host=redis_host,
                port=redis_port,
                db=redis_db
            )
        )

    async def notify(self, entity_type, entity_id, new_state):
        return await self.publish_event(build_event(entity_type, entity_id, new_state))

    async def publish_event(self, event: Event) -> str:
        # Save to outbox
        if self.db is not None:
            sql = """
                INSERT INTO outbox (event_id, event_type, payload)
                VALUES ($1, $2, $3)
            """
            await self.db.execute_query(sql, event.event_id, event.event_type, event.model_dump_json())

        self.r.xadd(self.stream, {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "payload": event.model_dump_json()
        })
        logger.info(f"Published event {event.event_type} with ID {event.event_id}")
        return event.event_id

    def ensure_group(self):
        try:
            self.r.xgroup_create(self.stream, self.consumer_group, id="0", mkstream=True)
        except redis.RedisError as e:
            if "BUSYGROUP" not in str(e):
                logger.error(f"Failed to create consumer group: {e}")
                raise

    def _decode_event(self, message) -> Optional[Event]:
        if b'payload' not in message and 'payload' not in message:
            logger.error(f"Message missing payload field: {message}")
            return None
        payload_value = message[b'payload' if b'payload' in message else 'payload']
        if isinstance(payload_value, bytes):
            try:
                payload_value = payload_value.decode('utf-8')
            except UnicodeDecodeError as e:
                logger.error(f"Failed to decode payload: {e}")
                return None
        try:
            return Event.model_validate_json(payload_value)
        except ValueError as e:
            logger.error(f"Invalid event payload: {payload_value}, error: {e}")
            return None

    async def read_batch(self, process_callback, count: int = 10, block: int = 1000) -> int:
        """Read one batch from the stream, hand each event to the callback, ack it. Returns events processed."""
        events = self.r.xreadgroup(
            groupname=self.consumer_group,
            consumername=self.service_name,
            streams={self.stream: ">"},
            count=count,
            block=block
        )
        processed = 0
        for _stream, messages in events or []:
            for message_id, message in messages:
                event = self._decode_event(message)
                if event is None:
                    # unparseable messages are acked so they do not block the group
                    self.r.xack(self.stream, self.consumer_group, message_id)
                    continue

                if self.db is not None:
                    sql = """
                        INSERT INTO inbox (event_id, event_type, payload)
                        VALUES ($1, $2, $3)
                        ON CONFLICT (event_id) DO NOTHING
                    """
                    await self.db.execute_query(sql, event.event_id, event.event_type, event.model_dump_json())

                try:
                    await process_callback(event)
                except Exception as e:
                    # left unacked for redelivery
                    logger.error(f"Error in process_callback for {event.event_id}: {e}")
                    continue

                self.r.xack(self.stream, self.consumer_group, message_id)
                processed += 1
        return processed

    async def consume_events(self, process_callback):
        self.ensure_group()
        while True:
            try:
                if not await self.read_batch(process_callback):
                    await asyncio.sleep(0.1)
            except redis.RedisError as e:
                logger.error(f"Error in consume_events loop: {e}")
                await asyncio.sleep(1)

    def close(self):
        self.r.close()
