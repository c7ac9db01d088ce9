"""Tests for host logging setup, component wiring and reply cleanup."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from nestor.config.schema import ChannelsConfig, Config, WebhookChannelConfig
from nestor.host.app import strip_internal
from nestor.host.bootstrap import (
    HOST_LOGGER_NAME,
    build_channels,
    build_host_components,
    configure_host_logging,
)


@pytest.fixture
def restore_host_logger():
    host_logger = logging.getLogger(HOST_LOGGER_NAME)
    saved = (list(host_logger.handlers), host_logger.level, host_logger.propagate)
    yield host_logger
    for handler in host_logger.handlers:
        handler.close()
    host_logger.handlers[:], host_logger.level, host_logger.propagate = saved


class TestConfigureHostLogging:
    def test_creates_rotating_log(self, tmp_path: Path, restore_host_logger: logging.Logger) -> None:
        log_file = configure_host_logging(tmp_path / "logs")

        assert log_file == tmp_path / "logs" / "host.log"
        assert log_file.exists()
        [file_handler] = [
            h for h in restore_host_logger.handlers if isinstance(h, RotatingFileHandler)
        ]
        assert file_handler.maxBytes == 5 * 1024 * 1024
        assert restore_host_logger.propagate is False

    def test_reconfiguring_does_not_stack_handlers(
        self, tmp_path: Path, restore_host_logger: logging.Logger
    ) -> None:
        configure_host_logging(tmp_path / "logs")
        configure_host_logging(tmp_path / "logs", level=logging.DEBUG)

        assert len(restore_host_logger.handlers) == 2
        assert restore_host_logger.level == logging.DEBUG

    def test_messages_reach_file(self, tmp_path: Path, restore_host_logger: logging.Logger) -> None:
        log_file = configure_host_logging(tmp_path / "logs")
        logging.getLogger("nestor.queue.group_queue").info("queue says hi")
        for handler in restore_host_logger.handlers:
            handler.flush()

        assert "queue says hi" in log_file.read_text()


class TestStripInternal:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Hello", "Hello"),
            ("<internal>plan</internal>Hello", "Hello"),
            ("A<internal>x</internal> B <internal>\ny\n</internal>", "A B"),
            ("<internal>only private</internal>", ""),
        ],
    )
    def test_strips_private_reasoning(self, raw: str, expected: str) -> None:
        assert strip_internal(raw) == expected


class TestBuildComponents:
    @pytest.mark.asyncio
    async def test_wires_queue_to_manager(self, host_config: Config, clock, runtime, store) -> None:
        components = build_host_components(host_config, clock, runtime=runtime, store=store)

        assert components.store is store
        assert components.scheduler.timezone.key == "UTC"
        assert components.router.channels == []
        await components.queue.close()

    def test_channels_from_config(self) -> None:
        config = Config(
            channels=ChannelsConfig(
                webhooks=[WebhookChannelConfig(url="https://relay.example.test", prefix="sig:")]
            )
        )
        [channel] = build_channels(config)
        assert channel.owns_group("sig:+4917")
