import os

from lilroot.modules.sandbox import Sandbox


def _sandbox(tmp_path):
    return Sandbox(
        rootfs_dir=str(tmp_path / "rootfs"),
        lib_dir=str(tmp_path / "lib"),
        native_lib_dir=str(tmp_path / "native"),
        cache_dir=str(tmp_path / "cache"),
    )


def test_command_argv_layout(tmp_path):
    sb = _sandbox(tmp_path)
    cmd = sb.command("node /usr/local/bin/openclaw gateway run --port 3000")

    native = str(tmp_path / "native")
    assert cmd.argv[:6] == [os.path.join(native, "libproot.so"), "--link2symlink", "-0",
                            "-r", str(tmp_path / "rootfs"), "-b"]
    assert cmd.argv[5:11] == ["-b", "/dev", "-b", "/proc", "-b", "/sys"]
    assert cmd.argv[11:15] == ["-w", "/root", "/usr/bin/env", "HOME=/root"]
    assert "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin" in cmd.argv
    assert "NODE_OPTIONS=--require /root/android-compat.cjs" in cmd.argv
    assert cmd.argv[-6:] == ["node", "/usr/local/bin/openclaw", "gateway", "run", "--port", "3000"]
    assert cmd.cwd == str(tmp_path / "rootfs")


def test_host_environment(tmp_path):
    cmd = _sandbox(tmp_path).command("true")
    assert cmd.env == {
        "LD_LIBRARY_PATH": f"{tmp_path / 'lib'}:{tmp_path / 'native'}",
        "PROOT_TMP_DIR": str(tmp_path / "cache"),
        "PROOT_LOADER": str(tmp_path / "native" / "libproot_loader.so"),
    }


def test_extra_env_goes_before_the_program(tmp_path):
    cmd = _sandbox(tmp_path).command("node /root/lilclaw-ui/serve-ui.cjs", workdir="/srv",
                                     extra_env={"PORT": "3001"})
    idx = cmd.argv.index("PORT=3001")
    assert cmd.argv[idx + 1:] == ["node", "/root/lilclaw-ui/serve-ui.cjs"]
    assert cmd.argv[cmd.argv.index("-w") + 1] == "/srv"


def test_command_is_pure(tmp_path):
    _sandbox(tmp_path).command("node x.js")
    assert not (tmp_path / "rootfs").exists()


def test_prepare_marks_proot_executable(tmp_path):
    sb = _sandbox(tmp_path)
    assert sb.prepare() is False
    (tmp_path / "native").mkdir()
    proot = tmp_path / "native" / "libproot.so"
    proot.write_bytes(b"\x7fELF")
    os.chmod(proot, 0o644)

    assert sb.prepare() is True
    assert os.access(proot, os.X_OK)
    assert sb.describe()["proot_present"] is True
