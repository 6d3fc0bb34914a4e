"""
模型文件存储

负责模型二进制文件的下载、完整性校验（大小容差）和删除。
"""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Tuple

import psutil
import requests

from ..core.models import DownloadOutcome, DownloadProgress, DownloadStatus, ModelConfig


logger = logging.getLogger(__name__)

# 实际大小相对于声明大小的容差范围
SIZE_TOLERANCE_LOW = 0.80
SIZE_TOLERANCE_HIGH = 1.20

# 下载前要求的可用空间相对于模型大小的倍数
FREE_SPACE_FACTOR = 1.5

USER_AGENT = "NutritionInsights/1.0"

ProgressCallback = Callable[[DownloadProgress], None]


class ModelAssetStore:
    """模型文件存储"""

    def __init__(
        self,
        model: ModelConfig,
        models_dir: str,
        chunk_size: int = 1024 * 1024,
        timeout: Tuple[int, int] = (15, 60),
        size_tolerance: Tuple[float, float] = (SIZE_TOLERANCE_LOW, SIZE_TOLERANCE_HIGH),
        progress_interval: float = 0.5,
        free_space_factor: float = FREE_SPACE_FACTOR,
    ):
        """
        初始化模型文件存储

        Args:
            model: 模型配置
            models_dir: 模型存放目录
            chunk_size: 下载分块大小（字节）
            timeout: (连接超时, 读取超时)，单位秒
            size_tolerance: 完整性校验的大小容差（下限比例, 上限比例）
            progress_interval: 进度回调的最小间隔（秒）
            free_space_factor: 下载前要求的可用空间倍数
        """
        self.model = model
        self.models_dir = Path(os.path.expanduser(str(models_dir)))
        self.chunk_size = chunk_size
        self.timeout = timeout
        self.size_tolerance = size_tolerance
        self.progress_interval = progress_interval
        self.free_space_factor = free_space_factor
        self._cancel_event = threading.Event()
        # 模型文件只允许一个写入者
        self._download_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._pending_downloads = 0

    @property
    def model_path(self) -> Path:
        return self.models_dir / self.model.filename

    @property
    def partial_path(self) -> Path:
        return self.models_dir / f"{self.model.filename}.part"

    def is_downloaded(self) -> bool:
        """
        检查模型是否已下载且通过大小容差校验

        Returns:
            bool: 文件存在且大小在容差范围内时返回True
        """
        try:
            if not self.model_path.is_file():
                return False
            ratio = self.model_path.stat().st_size / self.model.size_bytes
            low, high = self.size_tolerance
            return low <= ratio <= high
        except OSError as e:
            logger.debug(f"检查模型文件失败，视为未下载: {e}")
            return False

    def size(self) -> int:
        """获取模型文件大小，不存在时返回0"""
        try:
            if self.model_path.is_file():
                return self.model_path.stat().st_size
        except OSError as e:
            logger.debug(f"读取模型文件大小失败: {e}")
        return 0

    def free_space_bytes(self) -> Optional[int]:
        """模型目录所在磁盘的可用空间，无法获取时返回None"""
        path = self.models_dir
        while not path.exists() and path != path.parent:
            path = path.parent
        try:
            return psutil.disk_usage(str(path)).free
        except OSError as e:
            logger.warning(f"获取磁盘可用空间失败: {e}")
            return None

    def required_free_bytes(self) -> int:
        """下载剩余部分需要的可用空间"""
        partial = self.partial_path.stat().st_size if self.partial_path.exists() else 0
        return max(0, int(self.model.size_bytes * self.free_space_factor) - partial)

    def has_free_space(self) -> bool:
        """可用空间足够下载模型时返回True，无法获取可用空间时视为足够"""
        free = self.free_space_bytes()
        return free is None or free >= self.required_free_bytes()

    def cancel_download(self) -> None:
        """请求取消当前下载，在下一个检查点生效；没有进行中的下载时忽略"""
        with self._state_lock:
            if self._pending_downloads == 0:
                logger.debug("没有进行中的下载，忽略取消请求")
                return
            logger.info(f"收到取消下载请求: {self.model.name}")
            self._cancel_event.set()

    def download(self, progress_callback: Optional[ProgressCallback] = None) -> DownloadOutcome:
        """
        下载模型文件

        已通过完整性校验时不发起任何网络请求。未完成的下载保存在 .part 文件中，
        下次调用时通过Range请求续传。并发调用会依次执行，后执行的调用看到已完成的文件。

        Args:
            progress_callback: 进度回调函数

        Returns:
            DownloadOutcome: 下载结果
        """
        with self._state_lock:
            self._pending_downloads += 1
        try:
            with self._download_lock:
                return self._download(progress_callback)
        finally:
            with self._state_lock:
                self._pending_downloads -= 1
                # 取消请求只作用于当前这批下载
                if self._pending_downloads == 0:
                    self._cancel_event.clear()

    def _download(self, progress_callback: Optional[ProgressCallback]) -> DownloadOutcome:
        if self.is_downloaded():
            logger.info(f"模型已存在且校验通过，跳过下载: {self.model_path}")
            return DownloadOutcome(success=True, status=DownloadStatus.ALREADY_PRESENT)

        if self._cancel_event.is_set():
            logger.info(f"下载开始前已取消: {self.model.name}")
            return DownloadOutcome(success=False, status=DownloadStatus.CANCELLED, error="Download cancelled")

        try:
            self.models_dir.mkdir(parents=True, exist_ok=True)
            # 未通过校验的旧文件从头重新下载
            self.model_path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"准备模型目录失败: {e}")
            return DownloadOutcome(
                success=False, status=DownloadStatus.NETWORK_ERROR, error=f"Storage error: {e}"
            )

        if not self.has_free_space():
            required_mb = round(self.required_free_bytes() / (1024 * 1024))
            logger.error(f"磁盘空间不足，需要至少 {required_mb}MB 可用空间")
            return DownloadOutcome(
                success=False,
                status=DownloadStatus.INSUFFICIENT_STORAGE,
                error=f"Insufficient storage space (need at least {required_mb} MB free)",
            )

        logger.info(f"开始下载模型 {self.model.name}: {self.model.download_url}")
        outcome = self._transfer(progress_callback)
        if outcome is not None:
            return outcome

        return self._finalize(progress_callback)

    def _transfer(self, progress_callback: Optional[ProgressCallback]) -> Optional[DownloadOutcome]:
        """传输数据到 .part 文件，成功时返回None"""
        session = requests.Session()
        session.headers.update({"User-Agent": USER_AGENT})

        try:
            headers = {}
            mode = "wb"
            initial_size = self.partial_path.stat().st_size if self.partial_path.exists() else 0
            if initial_size > 0:
                headers["Range"] = f"bytes={initial_size}-"
                mode = "ab"

            response = session.get(
                self.model.download_url,
                headers=headers,
                stream=True,
                timeout=self.timeout,
            )

            # 部分文件已完整
            if response.status_code == 416 and initial_size > 0:
                logger.info("服务器返回416，部分文件已完整")
                return None

            response.raise_for_status()

            # 服务器忽略了Range请求，从头开始
            if initial_size > 0 and response.status_code != 206:
                logger.info("服务器不支持续传，重新下载")
                initial_size = 0
                mode = "wb"

            content_length = response.headers.get("content-length")
            total_bytes = int(content_length) + initial_size if content_length else self.model.size_bytes
            downloaded = initial_size
            start_time = time.monotonic()
            last_report = 0.0

            with open(self.partial_path, mode) as f:
                for data in response.iter_content(chunk_size=self.chunk_size):
                    if self._cancel_event.is_set():
                        break
                    if not data:
                        continue
                    f.write(data)
                    downloaded += len(data)

                    now = time.monotonic()
                    if progress_callback and now - last_report >= self.progress_interval:
                        last_report = now
                        progress_callback(
                            self._progress(downloaded - initial_size, downloaded, total_bytes, now - start_time)
                        )

            if self._cancel_event.is_set():
                logger.info(f"下载已取消: {self.model.name}")
                self.partial_path.unlink(missing_ok=True)
                return DownloadOutcome(
                    success=False, status=DownloadStatus.CANCELLED, error="Download cancelled"
                )

            return None

        except requests.RequestException as e:
            # 网络错误时保留部分文件以便续传
            logger.error(f"模型下载失败: {e}")
            return DownloadOutcome(success=False, status=DownloadStatus.NETWORK_ERROR, error=str(e))
        except OSError as e:
            logger.error(f"写入模型文件失败: {e}")
            self.partial_path.unlink(missing_ok=True)
            return DownloadOutcome(
                success=False, status=DownloadStatus.NETWORK_ERROR, error=f"Storage error: {e}"
            )
        finally:
            session.close()

    def _finalize(self, progress_callback: Optional[ProgressCallback]) -> DownloadOutcome:
        """将 .part 文件移动到最终位置并重新校验"""
        try:
            os.replace(self.partial_path, self.model_path)
        except OSError as e:
            logger.error(f"移动模型文件失败: {e}")
            return DownloadOutcome(
                success=False, status=DownloadStatus.NETWORK_ERROR, error=f"Storage error: {e}"
            )

        if not self.is_downloaded():
            actual = self.size()
            logger.error(
                f"模型完整性校验失败: 期望约 {self.model.size_bytes} 字节，实际 {actual} 字节"
            )
            self.model_path.unlink(missing_ok=True)
            return DownloadOutcome(
                success=False,
                status=DownloadStatus.INTEGRITY_ERROR,
                error="Download integrity check failed: file size mismatch",
            )

        if progress_callback:
            size = self.size()
            progress_callback(DownloadProgress(
                bytes_downloaded=size, total_bytes=size, percentage=100, estimated_seconds_remaining=0
            ))

        logger.info(f"模型 {self.model.name} 下载并校验完成")
        return DownloadOutcome(success=True, status=DownloadStatus.COMPLETED)

    @staticmethod
    def _progress(session_bytes: int, downloaded: int, total_bytes: int, elapsed: float) -> DownloadProgress:
        """计算下载进度与剩余时间"""
        percentage = min(99, round(downloaded / total_bytes * 100)) if total_bytes > 0 else 0
        speed = session_bytes / elapsed if elapsed > 0 else 0
        remaining = max(0, total_bytes - downloaded)
        eta = round(remaining / speed) if speed > 0 else None
        return DownloadProgress(
            bytes_downloaded=downloaded,
            total_bytes=total_bytes,
            percentage=percentage,
            estimated_seconds_remaining=eta,
        )

    def delete(self) -> None:
        """删除模型文件，失败时仅记录日志"""
        for path in (self.model_path, self.partial_path):
            try:
                if path.exists():
                    path.unlink()
                    logger.info(f"已删除模型文件: {path}")
            except OSError as e:
                logger.error(f"删除模型文件失败 {path}: {e}")
