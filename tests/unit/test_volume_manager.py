"""
Unit tests for the volume manager.
"""
import os
import pytest
from stackpilot.MANAGERS.volume_manager import VolumeManager
from stackpilot.MODELS.service_definition import VolumeMount


class TestVolumeManager:
    """Tests for VolumeManager."""

    def test_init_is_lazy(self, tmp_path):
        """Nothing is created before a volume is used."""
        vm = VolumeManager(base_dir=str(tmp_path))
        assert vm.volumes_root == os.path.join(str(tmp_path), ".stackpilot", "volumes")
        assert not os.path.exists(vm.volumes_root)

    def test_create_volume(self, tmp_path):
        """Test volume creation."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vol = vm.create_volume("test-vol")
        assert vol.name == "test-vol"
        assert os.path.isdir(vol.path)

    def test_create_volume_idempotent(self, tmp_path):
        """Creating the same volume twice returns the existing volume."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vol1 = vm.create_volume("test-vol")
        vol2 = vm.create_volume("test-vol")
        assert vol1 is vol2

    def test_data_survives_a_new_manager(self, tmp_path):
        """Backing directories persist; a fresh manager finds the same data."""
        vol = VolumeManager(base_dir=str(tmp_path)).create_volume("data")
        with open(os.path.join(vol.path, "state.txt"), "w") as f:
            f.write("kept")
        again = VolumeManager(base_dir=str(tmp_path)).create_volume("data")
        assert again.path == vol.path
        assert os.path.exists(os.path.join(again.path, "state.txt"))

    def test_list_volumes(self, tmp_path):
        """Test listing volumes."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.create_volume("vol1")
        vm.create_volume("vol2")
        names = [v.name for v in vm.list_volumes()]
        assert names == ["vol1", "vol2"]

    def test_remove_volume(self, tmp_path):
        """Non-empty volumes are only removed with force."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vol = vm.create_volume("test-vol")
        with open(os.path.join(vol.path, "file"), "w") as f:
            f.write("x")
        assert vm.remove_volume("test-vol") is False
        assert vm.remove_volume("test-vol", force=True) is True
        assert vm.get_volume("test-vol") is None
        assert not os.path.exists(vol.path)
        assert vm.remove_volume("unknown") is False

    def test_resolve_named_and_bind_mounts(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        named = vm.resolve(VolumeMount(source="data", target="/data", read_only=True))
        assert named.volume == "data"
        assert named.source == vm.get_volume("data").path
        assert named.read_only

        bind = vm.resolve(VolumeMount(source="./conf", target="/etc/app"))
        assert bind.volume is None
        assert bind.source == os.path.join(str(tmp_path), "conf")

    def test_resolve_target_stays_inside_root(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        root = str(tmp_path / "root")
        assert vm.resolve_target("/app/data", root) == os.path.join(root, "app", "data")
        assert vm.resolve_target("/../../etc/passwd", root) == os.path.join(root, "etc", "passwd")

    def test_materialize_shares_backing_store(self, tmp_path):
        """Two instances mounting one volume see each other's writes."""
        vm = VolumeManager(base_dir=str(tmp_path))
        mount = vm.resolve(VolumeMount(source="shared", target="/srv/shared"))
        first, second = str(tmp_path / "i1"), str(tmp_path / "i2")
        vm.materialize([mount], first)
        vm.materialize([mount], second)
        with open(os.path.join(first, "srv", "shared", "hello.txt"), "w") as f:
            f.write("hi")
        with open(os.path.join(second, "srv", "shared", "hello.txt")) as f:
            assert f.read() == "hi"

        # idempotent
        vm.materialize([mount], first)
        assert os.path.islink(os.path.join(first, "srv", "shared"))
