"""
utils.py — Utilitários de sistema de arquivos, download e extração.

- Download HTTP com redirects manuais (até 5) e progresso por chunk
- Extração de tar.gz em modo overlay (camadas posteriores sobrescrevem)
- Helpers de diretórios e formatação de tamanho
"""

import os
import shutil
import subprocess
import tarfile
from urllib.parse import urljoin

import requests

from lilroot.modules import log
from lilroot.modules.errors import DownloadError, ExtractionError

logger = log.get_logger("utils")

REDIRECT_CODES = (301, 302, 303, 307, 308)
CHUNK_SIZE = 65536

# tarfile >= 3.12 aceita filtros; "tar" preserva symlinks absolutos do rootfs
_EXTRACT_KW = {"filter": "tar"} if hasattr(tarfile, "tar_filter") else {}


# -------------------------
# Sistema de arquivos
# -------------------------
def ensure_dir(path: str):
    """Cria diretório se não existir"""
    os.makedirs(path, exist_ok=True)


def format_size(size: int) -> str:
    """41 MB / 244 KB / 512 B"""
    if size >= 1_048_576:
        return f"{size // 1_048_576} MB"
    if size >= 1024:
        return f"{size // 1024} KB"
    return f"{size} B"


# -------------------------
# Execução de comandos
# -------------------------
def run(cmd: list[str], cwd: str | None = None, env: dict | None = None):
    """Executa comando com stdout+stderr combinados. Retorna (rc, output)."""
    logger.debug("Executando: %s", " ".join(cmd))
    proc = subprocess.run(
        cmd,
        cwd=cwd,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
    )
    return proc.returncode, proc.stdout or ""


# -------------------------
# Download
# -------------------------
def download(url: str, dest: str, on_progress=None, session=None,
             timeout=(30, 300), max_redirects: int = 5, expected_size: int = 0) -> int:
    """
    Baixa url → dest seguindo redirects manualmente (Location é lido em cada salto).
    on_progress(fração) é chamado após cada chunk; a última chamada é sempre 1.0.
    Retorna o número de bytes gravados.
    """
    http = session or requests
    ensure_dir(os.path.dirname(dest) or ".")

    current = url
    response = None
    try:
        for _ in range(max_redirects + 1):
            response = http.get(current, stream=True, allow_redirects=False, timeout=timeout)
            if response.status_code not in REDIRECT_CODES:
                break
            location = response.headers.get("Location")
            response.close()
            if not location:
                raise DownloadError(f"redirect sem Location em {current}", status_code=response.status_code)
            current = urljoin(current, location)
            logger.debug("redirect → %s", current)
        else:
            raise DownloadError(f"mais de {max_redirects} redirects a partir de {url}")
    except requests.RequestException as e:
        raise DownloadError(f"falha de rede em {current}: {e}") from e

    if not 200 <= response.status_code < 300:
        response.close()
        raise DownloadError(f"HTTP {response.status_code} em {current}", status_code=response.status_code)

    total = int(response.headers.get("Content-Length") or 0) or int(expected_size or 0)
    written = 0
    logger.info("Baixando %s → %s", current, dest)
    try:
        with open(dest, "wb") as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                f.write(chunk)
                written += len(chunk)
                if on_progress and total > 0:
                    on_progress(min(written / total, 1.0))
    except requests.RequestException as e:
        raise DownloadError(f"conexão interrompida em {current}: {e}") from e
    except OSError as e:
        raise DownloadError(f"erro gravando {dest}: {e}") from e
    finally:
        response.close()

    if on_progress:
        on_progress(1.0)
    logger.info("Baixados %d KB de %s", written // 1024, current)
    return written


# -------------------------
# Extração de arquivos
# -------------------------
def extract_tarball(tar_path: str, dest_dir: str):
    """
    Extrai tarball sobre dest_dir (overlay): arquivos existentes no mesmo
    caminho são substituídos, os demais ficam intactos.
    Usa `tar` do sistema quando existe, senão o módulo tarfile.
    """
    ensure_dir(dest_dir)
    logger.info("Extraindo %s → %s", tar_path, dest_dir)
    tar_bin = shutil.which("tar")
    if tar_bin:
        rc, out = run([tar_bin, "xzf", tar_path, "-C", dest_dir])
        if rc != 0:
            raise ExtractionError(f"tar extraction failed (code {rc}): {out.strip()}", returncode=rc, output=out)
        return dest_dir

    logger.warning("tar não encontrado no PATH, usando tarfile")
    try:
        with tarfile.open(tar_path, "r:*") as tar:
            for member in tar.getmembers():
                target = os.path.join(dest_dir, member.name)
                # GNU tar faz unlink antes de gravar; sem isso escreveríamos através de symlinks
                if not member.isdir() and (os.path.islink(target) or os.path.isfile(target)):
                    os.unlink(target)
                tar.extract(member, path=dest_dir, **_EXTRACT_KW)
    except (tarfile.TarError, OSError) as e:
        raise ExtractionError(f"tar extraction failed: {e}", output=str(e)) from e
    return dest_dir
