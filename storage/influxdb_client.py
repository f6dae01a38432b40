"""InfluxDB storage for session observations."""

import asyncio
import logging
from typing import Optional

import influxdb_client
from influxdb_client import Point
from influxdb_client.client.write_api import SYNCHRONOUS

from config import config
from processors.session_tracker import SessionObservation

logger = logging.getLogger(__name__)


class ObservationStore:
    """セッション観測を InfluxDB に書き込むクライアント管理クラス"""

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None,
                 org: Optional[str] = None, bucket: Optional[str] = None):
        self.url = url or config.INFLUXDB_URL
        self.token = token if token is not None else config.INFLUXDB_TOKEN
        self.org = org or config.INFLUXDB_ORG
        self.bucket = bucket or config.INFLUXDB_BUCKET
        self.client = None
        self.write_api = None
        self._active_tasks = set()  # アクティブタスクの追跡

        try:
            self.client = influxdb_client.InfluxDBClient(
                url=self.url,
                token=self.token,
                org=self.org
            )
            self.write_api = self.client.write_api(write_options=SYNCHRONOUS)

            # 接続テスト
            try:
                health = self.client.health()
                if health.status == "pass":
                    logger.info(f"InfluxDB client initialized successfully: {self.url}")
                else:
                    logger.warning(f"InfluxDB health check failed: {health.status}")
                    self._disable_client()
            except Exception as e:
                logger.warning(f"InfluxDB connection test failed: {e} - observation writes will be disabled")
                self._disable_client()

        except Exception as e:
            logger.error(f"Failed to initialize InfluxDB client: {e} - observation writes will be disabled")
            self._disable_client()

    @property
    def enabled(self) -> bool:
        return self.client is not None and self.write_api is not None

    def _disable_client(self):
        """InfluxDBクライアントを無効化"""
        try:
            if self.write_api:
                self.write_api.close()
            if self.client:
                self.client.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing InfluxDB client: {e}")
        self.client = None
        self.write_api = None

    def build_point(self, link: str, observation: SessionObservation) -> Point:
        point = (
            Point(config.INFLUXDB_MEASUREMENT)
            .tag("link", link)
            .tag("kind", observation.kind.value)
            .field("epoch", int(observation.epoch))
            .field("message", observation.message)
        )
        for key, value in observation.details.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                point.field(key, str(value))
            else:
                point.field(key, value)
        return point

    def write_observation(self, link: str, observation: SessionObservation) -> bool:
        """観測をバックグラウンドで書き込む（失敗してもリンク処理は継続）"""
        # テスト環境ではInfluxDB書き込みをスキップ
        if config.IS_TEST_ENV:
            logger.debug(f"Test environment detected, skipping InfluxDB write for {observation.kind.value}")
            return False

        if not self.enabled:
            logger.debug(f"InfluxDB client not initialized, skipping write for {observation.kind.value}")
            return False

        self._cleanup_completed_tasks()
        task = asyncio.create_task(self._write_async(self.build_point(link, observation)))
        self._active_tasks.add(task)
        return True  # 非同期実行のため、即座にTrueを返す

    async def _write_async(self, point: Point):
        """非同期でInfluxDBにデータを書き込み"""
        try:
            if not self.enabled:
                return
            await asyncio.wait_for(
                asyncio.to_thread(
                    self.write_api.write,
                    bucket=self.bucket,
                    org=self.org,
                    record=point
                ),
                timeout=config.INFLUXDB_TIMEOUT_SECONDS
            )
            logger.debug("Observation written to InfluxDB")
        except asyncio.TimeoutError:
            logger.error("Timeout writing observation to InfluxDB (continuing with other operations)")
        except ConnectionError as e:
            logger.error(f"Connection error writing to InfluxDB: {e} (continuing with other operations)")
        except Exception as e:
            logger.error(f"Unexpected error writing to InfluxDB: {e}")

    def _cleanup_completed_tasks(self):
        completed = {task for task in self._active_tasks if task.done()}
        for task in completed:
            self._active_tasks.discard(task)
            if not task.cancelled() and task.exception():
                logger.warning(f"Task completed with exception: {task.exception()}")
        if completed:
            logger.debug(f"Cleaned up {len(completed)} completed tasks")

    async def close(self):
        """リソースのクリーンアップ - 全てのアクティブタスクを待機"""
        try:
            if self._active_tasks:
                logger.info(f"Waiting for {len(self._active_tasks)} active tasks to complete...")
                await asyncio.gather(*self._active_tasks, return_exceptions=True)
                self._active_tasks.clear()
            self.close_sync()
        except Exception as e:
            logger.error(f"Error during InfluxDB client cleanup: {e}")

    def close_sync(self):
        try:
            if self.write_api:
                self.write_api.close()
            if self.client:
                self.client.close()
        except Exception as e:
            logger.error(f"Error during InfluxDB client cleanup: {e}")
        self.client = None
        self.write_api = None
