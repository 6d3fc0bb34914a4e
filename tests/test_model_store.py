"""
模型文件存储测试

测试大小容差校验、幂等下载、续传、取消和删除。
"""

import os
import shutil
import tempfile
import threading
from unittest.mock import Mock, patch

import pytest
import requests

from nutrition_insights.core.models import DownloadStatus, ModelConfig, TemplateKind
from nutrition_insights.inferencers.model_store import ModelAssetStore


SESSION_PATH = "nutrition_insights.inferencers.model_store.requests.Session"
DISK_USAGE_PATH = "nutrition_insights.inferencers.model_store.psutil.disk_usage"


def make_model(size_bytes: int = 1000) -> ModelConfig:
    return ModelConfig(
        tier="test",
        name="Test Model",
        filename="test-model.gguf",
        download_url="https://example.com/test-model.gguf",
        size_bytes=size_bytes,
        min_ram_gb=1,
        context_size=2048,
        threads=2,
        template_kind=TemplateKind.CHATML,
        stop_tokens=("<|im_end|>",),
    )


def make_response(chunks, status_code=200, headers=None):
    response = Mock()
    response.status_code = status_code
    response.headers = headers if headers is not None else {
        "content-length": str(sum(len(c) for c in chunks))
    }
    response.iter_content.return_value = iter(chunks)
    response.raise_for_status = Mock()
    return response


class TestModelAssetStoreIntegrity:
    """完整性校验测试类"""

    def setup_method(self):
        """测试前准备"""
        self.temp_dir = tempfile.mkdtemp()
        self.store = ModelAssetStore(make_model(1000), self.temp_dir)

    def teardown_method(self):
        """测试后清理"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_model(self, size: int):
        with open(self.store.model_path, "wb") as f:
            f.write(b"x" * size)

    def test_missing_file_is_not_downloaded(self):
        """测试文件不存在"""
        assert self.store.is_downloaded() is False
        assert self.store.size() == 0

    @pytest.mark.parametrize("size,expected", [
        (790, False),
        (800, True),
        (1000, True),
        (1200, True),
        (1210, False),
    ])
    def test_size_tolerance_band(self, size, expected):
        """测试80%-120%容差范围"""
        self._write_model(size)
        assert self.store.is_downloaded() is expected
        assert self.store.size() == size

    def test_custom_tolerance(self):
        """测试自定义容差"""
        store = ModelAssetStore(make_model(1000), self.temp_dir, size_tolerance=(0.99, 1.01))
        self._write_model(950)
        assert store.is_downloaded() is False

    def test_stat_error_treated_as_not_downloaded(self):
        """测试文件系统错误视为未下载"""
        self._write_model(1000)
        with patch("pathlib.Path.stat", side_effect=OSError("磁盘错误")):
            assert self.store.is_downloaded() is False


class TestModelAssetStoreDownload:
    """下载测试类"""

    def setup_method(self):
        """测试前准备"""
        self.temp_dir = tempfile.mkdtemp()
        self.store = ModelAssetStore(make_model(1000), self.temp_dir, progress_interval=0)

    def teardown_method(self):
        """测试后清理"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_download_when_present_makes_no_network_calls(self):
        """测试已下载时不发起网络请求"""
        with open(self.store.model_path, "wb") as f:
            f.write(b"x" * 1000)

        with patch(SESSION_PATH) as mock_session_cls:
            first = self.store.download()
            second = self.store.download()

        assert first.success and second.success
        assert first.status == DownloadStatus.ALREADY_PRESENT
        mock_session_cls.assert_not_called()

    def test_successful_download(self):
        """测试成功下载并报告进度"""
        chunks = [b"a" * 400, b"b" * 400, b"c" * 200]
        progress = []

        with patch(SESSION_PATH) as mock_session_cls:
            session = mock_session_cls.return_value
            session.get.return_value = make_response(chunks)
            outcome = self.store.download(progress.append)

        assert outcome.success is True
        assert outcome.status == DownloadStatus.COMPLETED
        assert self.store.is_downloaded()
        assert not self.store.partial_path.exists()
        assert progress[-1].percentage == 100
        assert all(p.percentage <= 99 for p in progress[:-1])
        session.close.assert_called_once()

    def test_integrity_failure_deletes_file(self):
        """测试下载完成但大小不符时删除文件"""
        with patch(SESSION_PATH) as mock_session_cls:
            mock_session_cls.return_value.get.return_value = make_response([b"x" * 100])
            outcome = self.store.download()

        assert outcome.success is False
        assert outcome.status == DownloadStatus.INTEGRITY_ERROR
        assert "integrity" in outcome.error
        assert not self.store.model_path.exists()
        assert self.store.is_downloaded() is False

    def test_network_error_keeps_partial_file(self):
        """测试网络错误时保留部分文件"""

        def failing_chunks():
            yield b"x" * 300
            raise requests.ConnectionError("连接中断")

        response = make_response([], headers={"content-length": "1000"})
        response.iter_content.return_value = failing_chunks()

        with patch(SESSION_PATH) as mock_session_cls:
            mock_session_cls.return_value.get.return_value = response
            outcome = self.store.download()

        assert outcome.success is False
        assert outcome.status == DownloadStatus.NETWORK_ERROR
        assert self.store.partial_path.stat().st_size == 300

    def test_resume_sends_range_header(self):
        """测试续传使用Range请求"""
        with open(self.store.partial_path, "wb") as f:
            f.write(b"x" * 600)

        with patch(SESSION_PATH) as mock_session_cls:
            session = mock_session_cls.return_value
            session.get.return_value = make_response([b"y" * 400], status_code=206)
            outcome = self.store.download()

        assert outcome.status == DownloadStatus.COMPLETED
        _, kwargs = session.get.call_args
        assert kwargs["headers"]["Range"] == "bytes=600-"
        assert self.store.size() == 1000

    def test_range_not_satisfiable_finalizes_partial(self):
        """测试416表示部分文件已完整"""
        with open(self.store.partial_path, "wb") as f:
            f.write(b"x" * 1000)

        with patch(SESSION_PATH) as mock_session_cls:
            mock_session_cls.return_value.get.return_value = make_response([], status_code=416)
            outcome = self.store.download()

        assert outcome.status == DownloadStatus.COMPLETED
        assert self.store.is_downloaded()

    def test_cancel_during_download(self):
        """测试下载过程中取消"""
        store = self.store

        def chunks():
            yield b"x" * 300
            store.cancel_download()
            yield b"x" * 300
            yield b"x" * 400

        response = make_response([], headers={"content-length": "1000"})
        response.iter_content.return_value = chunks()

        with patch(SESSION_PATH) as mock_session_cls:
            mock_session_cls.return_value.get.return_value = response
            outcome = store.download()

        assert outcome.success is False
        assert outcome.cancelled is True
        assert outcome.status == DownloadStatus.CANCELLED
        assert not store.partial_path.exists()
        assert not store.model_path.exists()

    def test_cancel_before_download_does_not_block_next_download(self):
        """测试之前的取消请求不影响新的下载"""
        self.store.cancel_download()

        with patch(SESSION_PATH) as mock_session_cls:
            mock_session_cls.return_value.get.return_value = make_response([b"x" * 1000])
            outcome = self.store.download()

        assert outcome.status == DownloadStatus.COMPLETED



    def test_cancel_before_transfer_starts(self):
        """测试下载开始后、传输开始前的取消请求不会丢失"""
        store = self.store

        def cancel_then_check():
            store.cancel_download()
            return False

        with patch(SESSION_PATH) as mock_session_cls, \
                patch.object(store, "is_downloaded", side_effect=cancel_then_check):
            outcome = store.download()

        assert outcome.status == DownloadStatus.CANCELLED
        mock_session_cls.assert_not_called()

        with patch(SESSION_PATH) as mock_session_cls:
            mock_session_cls.return_value.get.return_value = make_response([b"x" * 1000])
            assert store.download().status == DownloadStatus.COMPLETED

    def test_concurrent_downloads_have_single_writer(self):
        """测试并发下载依次执行，只写入一次"""
        started = threading.Event()
        release = threading.Event()

        def chunks():
            yield b"x" * 500
            started.set()
            release.wait(5)
            yield b"x" * 500

        response = make_response([], headers={"content-length": "1000"})
        response.iter_content.return_value = chunks()
        results = {}

        with patch(SESSION_PATH) as mock_session_cls:
            session = mock_session_cls.return_value
            session.get.return_value = response

            first = threading.Thread(target=lambda: results.setdefault("first", self.store.download()))
            first.start()
            assert started.wait(5)

            second = threading.Thread(target=lambda: results.setdefault("second", self.store.download()))
            second.start()
            second.join(0.2)
            assert second.is_alive()

            release.set()
            first.join(5)
            second.join(5)

        assert results["first"].status == DownloadStatus.COMPLETED
        assert results["second"].status == DownloadStatus.ALREADY_PRESENT
        assert session.get.call_count == 1
        assert self.store.size() == 1000


class TestModelAssetStoreFreeSpace:
    """磁盘空间检查测试类"""

    def setup_method(self):
        """测试前准备"""
        self.temp_dir = tempfile.mkdtemp()
        self.store = ModelAssetStore(make_model(1000), os.path.join(self.temp_dir, "models"))

    def teardown_method(self):
        """测试后清理"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_insufficient_space_refused_before_network(self):
        """测试空间不足时不发起下载"""
        with patch(DISK_USAGE_PATH, return_value=Mock(free=1499)), patch(SESSION_PATH) as mock_session_cls:
            outcome = self.store.download()

        assert outcome.success is False
        assert outcome.status == DownloadStatus.INSUFFICIENT_STORAGE
        assert "Insufficient storage" in outcome.error
        mock_session_cls.assert_not_called()

    def test_exact_threshold_allows_download(self):
        """测试空间恰好满足要求时允许下载"""
        with patch(DISK_USAGE_PATH, return_value=Mock(free=1500)), patch(SESSION_PATH) as mock_session_cls:
            mock_session_cls.return_value.get.return_value = make_response([b"x" * 1000])
            outcome = self.store.download()

        assert outcome.status == DownloadStatus.COMPLETED

    def test_partial_file_reduces_requirement(self):
        """测试已下载的部分计入需要的空间"""
        os.makedirs(self.store.models_dir)
        with open(self.store.partial_path, "wb") as f:
            f.write(b"x" * 600)

        assert self.store.required_free_bytes() == 900
        with patch(DISK_USAGE_PATH, return_value=Mock(free=900)):
            assert self.store.has_free_space() is True

    def test_unknown_free_space_treated_as_enough(self):
        """测试无法获取可用空间时视为足够"""
        with patch(DISK_USAGE_PATH, side_effect=OSError("not mounted")):
            assert self.store.free_space_bytes() is None
            assert self.store.has_free_space() is True

    def test_missing_directory_checks_parent(self):
        """测试模型目录不存在时检查上级目录"""
        with patch(DISK_USAGE_PATH, return_value=Mock(free=10)) as mock_disk_usage:
            assert self.store.free_space_bytes() == 10

        mock_disk_usage.assert_called_once_with(self.temp_dir)


class TestModelAssetStoreDelete:
    """删除测试类"""

    def setup_method(self):
        """测试前准备"""
        self.temp_dir = tempfile.mkdtemp()
        self.store = ModelAssetStore(make_model(1000), self.temp_dir)

    def teardown_method(self):
        """测试后清理"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_delete_removes_model_and_partial(self):
        """测试删除模型和部分文件"""
        for path in (self.store.model_path, self.store.partial_path):
            with open(path, "wb") as f:
                f.write(b"x")

        self.store.delete()

        assert not self.store.model_path.exists()
        assert not self.store.partial_path.exists()

    def test_delete_missing_is_noop(self):
        """测试文件不存在时删除不报错"""
        self.store.delete()

    def test_delete_swallows_errors(self):
        """测试删除失败只记录日志"""
        with open(self.store.model_path, "wb") as f:
            f.write(b"x")

        with patch("pathlib.Path.unlink", side_effect=PermissionError("权限不足")):
            self.store.delete()

        assert os.path.exists(self.store.model_path)
