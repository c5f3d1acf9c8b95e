import hashlib
import os
import shutil
import tarfile
import tempfile

import requests

from ibundle.modules import config, log

logger = log.get_logger("utils")


# -------------------------
# Sistema de arquivos
# -------------------------
def ensure_dir(path: str):
    """Cria diretório se não existir"""
    os.makedirs(path, exist_ok=True)


def mkdtemp(prefix: str = "ibundle-") -> str:
    """Cria diretório temporário exclusivo"""
    return tempfile.mkdtemp(prefix=prefix)


def exists(path: str) -> bool:
    return os.path.lexists(path)


def convert_to_standard_path(path: str) -> str:
    """Caminho do SO (pode ter ~, relativo) -> caminho absoluto normalizado"""
    return os.path.abspath(os.path.expanduser(path))


def copy_file(src: str, dst: str):
    """Copia arquivo preservando metadados"""
    ensure_dir(os.path.dirname(dst))
    shutil.copy2(src, dst)


def copy_tree(src: str, dst: str):
    """Copia árvore preservando symlinks (dst não pode existir)"""
    ensure_dir(os.path.dirname(dst))
    shutil.copytree(src, dst, symlinks=True)


def rm(path: str):
    """Remove arquivo ou diretório"""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)


def sha256(path: str) -> str:
    """SHA256 de um arquivo"""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


# -------------------------
# Tarballs
# -------------------------
def create_tarball(src_dir: str, dest_file: str, arcname: str | None = None) -> str:
    """
    Cria .tar.gz de src_dir em dest_file de forma atômica: escreve em
    <dest>.tmp e renomeia; em falha o temporário é removido e dest_file
    nunca aparece incompleto.
    """
    arcname = arcname or os.path.basename(os.path.normpath(src_dir))
    ensure_dir(os.path.dirname(dest_file))
    tmp = dest_file + ".tmp"
    logger.debug("Criando tarball %s → %s", src_dir, dest_file)
    try:
        with tarfile.open(tmp, "w:gz") as tf:
            tf.add(src_dir, arcname=arcname)
        os.replace(tmp, dest_file)
    except BaseException:
        if os.path.lexists(tmp):
            os.remove(tmp)
        raise
    return dest_file


def extract_tarball(tar_path: str, dest_dir: str):
    """Extrai tarball (.tar.gz, .tar.xz, etc.); o filtro "data" recusa membros fora de dest_dir"""
    ensure_dir(dest_dir)
    logger.debug("Extraindo %s → %s", tar_path, dest_dir)
    with tarfile.open(tar_path, "r:*") as tar:
        tar.extractall(dest_dir, filter="data")
    return dest_dir


# -------------------------
# Download
# -------------------------
def download(url: str, dest: str, expected_sha256: str | None = None, timeout: float | None = None):
    """Baixa arquivo com checagem opcional de SHA256 (arquivo parcial é removido)"""
    ensure_dir(os.path.dirname(dest))
    timeout = timeout or float(config.get("http_timeout"))

    logger.info("Baixando %s → %s", url, dest)
    try:
        with requests.get(url, stream=True, timeout=timeout) as r:
            r.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in r.iter_content(chunk_size=8192):
                    f.write(chunk)
        if expected_sha256:
            digest = sha256(dest)
            if digest != expected_sha256.lower():
                raise ValueError(f"SHA256 inválido para {url}: esperado {expected_sha256}, obtido {digest}")
    except BaseException:
        if os.path.exists(dest):
            os.remove(dest)
        raise
    return dest
