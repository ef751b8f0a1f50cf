"""
Message collection from a broker topic.

Each collection opens a fresh consumer group positioned at the earliest
retained offset, so collecting twice from an unchanged topic yields the same
messages in the same order. The consumer is stopped on every exit path.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from aiokafka import AIOKafkaConsumer

from cdc_harness.errors import CollectionTimeout
from cdc_harness.logging_utils import create_harness_logger

logger = create_harness_logger("collector")


@dataclass(frozen=True)
class CollectedMessage:
    """One message as read from the broker."""

    key: bytes | None
    value: bytes | None
    partition: int
    offset: int


ConsumerFactory = Callable[[str, str], Any]


class MessageCollector:
    """Collect a bounded number of messages from a topic within a deadline."""

    def __init__(
        self,
        bootstrap_servers: str,
        *,
        consumer_factory: ConsumerFactory | None = None,
        poll_timeout_ms: int = 500,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.poll_timeout_ms = poll_timeout_ms
        self._consumer_factory = consumer_factory or self._create_consumer

    def _create_consumer(self, topic: str, group_id: str) -> AIOKafkaConsumer:
        return AIOKafkaConsumer(
            topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )

    async def collect(
        self,
        topic: str,
        expected_count: int,
        wait: float = 5.0,
        *,
        collect_partitions: bool = False,
    ) -> list[CollectedMessage] | dict[int, list[CollectedMessage]]:
        """
        Collect ``expected_count`` messages from ``topic``.

        Args:
            topic: Topic to read from the earliest retained offset
            expected_count: Number of messages to wait for
            wait: Seconds to wait before giving up
            collect_partitions: Return messages grouped by partition id

        Returns:
            Messages in arrival order, or a mapping of partition id to that
            partition's messages in arrival order when ``collect_partitions``.

        Raises:
            CollectionTimeout: Fewer than ``expected_count`` messages arrived
                within ``wait`` seconds.
        """
        messages: list[CollectedMessage] = []
        partitions: dict[int, list[CollectedMessage]] = defaultdict(list)

        group_id = f"cdc-harness-{uuid.uuid4().hex[:8]}"
        consumer = self._consumer_factory(topic, group_id)

        deadline = asyncio.timeout(wait)
        try:
            try:
                async with deadline:
                    await consumer.start()
                    logger.debug(f"Consumer started for topic {topic}", group_id=group_id)

                    while len(messages) < expected_count:
                        batch = await consumer.getmany(timeout_ms=self.poll_timeout_ms)
                        for records in batch.values():
                            for record in records:
                                message = CollectedMessage(
                                    key=record.key,
                                    value=record.value,
                                    partition=record.partition,
                                    offset=record.offset,
                                )
                                messages.append(message)
                                partitions[message.partition].append(message)
                                if len(messages) == expected_count:
                                    break
                            if len(messages) == expected_count:
                                break
            except TimeoutError:
                # socket timeouts from the client are TimeoutError too
                if not deadline.expired():
                    raise
                raise CollectionTimeout(topic, expected_count, len(messages), wait) from None
        finally:
            await self._release(consumer, topic)

        logger.info(f"Collected {len(messages)} messages from {topic}")
        if collect_partitions:
            return dict(partitions)
        return messages

    async def _release(self, consumer: Any, topic: str) -> None:
        try:
            await consumer.stop()
        except Exception as e:
            logger.warning(f"Error stopping consumer for {topic}: {e}")
