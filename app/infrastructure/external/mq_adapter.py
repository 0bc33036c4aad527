import json
import logging
from typing import Any, Callable, Mapping, Optional

import pika
from fastapi.concurrency import run_in_threadpool

from app.application.interfaces import JobQueueInterface
from app.config.settings import QueueConfig, settings

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict], bool]


class RabbitMQJobQueue(JobQueueInterface):
    """Publishes processing jobs to a durable RabbitMQ queue and consumes them in ``worker.py``"""

    def __init__(self, config: Optional[QueueConfig] = None):
        self.config = config or settings.queue
        self.queue_name = self.config.queue_name
        self.credentials = pika.PlainCredentials(
            self.config.rabbitmq_username,
            self.config.rabbitmq_password.get_secret_value(),
        )
        self.connection_params = pika.ConnectionParameters(
            host=self.config.rabbitmq_host,
            port=self.config.rabbitmq_port,
            credentials=self.credentials,
        )

    def _get_connection(self):
        """Get a connection to RabbitMQ"""
        return pika.BlockingConnection(self.connection_params)

    def _publish_sync(self, message: Mapping[str, Any]) -> None:
        connection = self._get_connection()
        try:
            channel = connection.channel()
            channel.queue_declare(queue=self.queue_name, durable=True)
            channel.basic_publish(
                exchange="",
                routing_key=self.queue_name,
                body=json.dumps(message),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # persistent
                    content_type="application/json",
                ),
            )
        finally:
            connection.close()

    async def publish(self, message: Mapping[str, Any]) -> bool:
        """Publish a job message; False when the broker is unreachable"""
        try:
            await run_in_threadpool(self._publish_sync, message)
        except pika.exceptions.AMQPError as exc:
            logger.error("Failed to publish job to %s: %s", self.queue_name, exc)
            return False
        logger.info("Published job to %s: %s", self.queue_name, message)
        return True

    def consume(self, handler: MessageHandler) -> None:
        """Block and feed every message to ``handler``; ack on True, dead-letter on False"""

        connection = self._get_connection()
        channel = connection.channel()
        channel.queue_declare(queue=self.queue_name, durable=True)
        channel.basic_qos(prefetch_count=1)

        def _on_message(ch, method, _properties, body):
            try:
                message = json.loads(body.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                logger.error("Dropping malformed job message: %s", exc)
                ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
                return
            if handler(message):
                ch.basic_ack(delivery_tag=method.delivery_tag)
            else:
                ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

        channel.basic_consume(queue=self.queue_name, on_message_callback=_on_message)
        logger.info("Starting consumer for queue: %s", self.queue_name)
        try:
            channel.start_consuming()
        except KeyboardInterrupt:
            channel.stop_consuming()
        finally:
            connection.close()


__all__ = ["RabbitMQJobQueue", "MessageHandler"]
