import sqlite3
import sys
from typing import Dict, Optional

import requests

from ibundle.modules import config, log
from ibundle.modules.errors import ConnectionFailure

logger = log.get_logger("sync")

SYNC_PATH = "/api/v1/sync"
COLLECTIONS = ("packages", "versions", "builds", "releaseTracks", "releaseVersions")


def server_url() -> str:
    """URL base do servidor de pacotes (sem / final)"""
    return str(config.get("package_server_url")).rstrip("/")


def _fetch_page(url: str, sync_token: Optional[Dict], timeout: float) -> Dict:
    try:
        r = requests.post(url, json={"syncToken": sync_token}, timeout=timeout)
        r.raise_for_status()
        data = r.json()
    except requests.RequestException as e:
        raise ConnectionFailure(f"Falha ao sincronizar com {url}: {e}", url=url, cause=e) from e
    except ValueError as e:
        raise ConnectionFailure(f"Resposta inválida de {url}: {e}", url=url, cause=e) from e

    if not isinstance(data, dict) or not isinstance(data.get("collections") or {}, dict):
        raise ConnectionFailure(f"Resposta inválida de {url}: esperado objeto com 'collections'", url=url)
    for name, records in (data.get("collections") or {}).items():
        if name not in COLLECTIONS or records is None:
            continue
        if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
            raise ConnectionFailure(f"Resposta inválida de {url}: '{name}' deve ser uma lista de objetos", url=url)
    return data


def update_server_package_data(catalog, sync_token: Optional[Dict] = None,
                               server: Optional[str] = None) -> Dict:
    """
    Sincroniza o catálogo com o servidor de pacotes:
      - envia o syncToken atual e grava cada página recebida
      - repete até o servidor responder upToDate
      - resetData apaga o catálogo local antes de gravar a página
    Qualquer falha de rede/protocolo vira ConnectionFailure.
    Retorna o último syncToken gravado.
    """
    url = (server or server_url()).rstrip("/") + SYNC_PATH
    timeout = float(config.get("http_timeout"))
    limit = int(config.get("sync_page_limit"))

    if sync_token is None:
        sync_token = catalog.get_sync_token()

    logger.info("Sincronizando catálogo com %s", url)
    for page in range(1, limit + 1):
        data = _fetch_page(url, sync_token, timeout)
        if data.get("resetData"):
            logger.info("Servidor pediu reset do catálogo local")
            catalog.reset()
        collections = {k: v for k, v in (data.get("collections") or {}).items() if k in COLLECTIONS}
        sync_token = data.get("syncToken", sync_token)
        try:
            catalog.insert_data(collections, sync_token)
        except (KeyError, TypeError, AttributeError,
                sqlite3.IntegrityError, sqlite3.InterfaceError, sqlite3.ProgrammingError) as e:
            raise ConnectionFailure(f"Resposta inválida de {url}: registro malformado ({e!r})", url=url, cause=e) from e
        logger.debug("página %d: %s", page, {k: len(v or []) for k, v in collections.items()})
        if data.get("upToDate"):
            logger.info("Catálogo sincronizado (%d páginas)", page)
            return sync_token or {}
    raise ConnectionFailure(f"Servidor {url} não terminou a sincronização após {limit} páginas", url=url)


def handle_connection_error(err: BaseException, stream=None) -> None:
    """Mensagem para o usuário quando o servidor de pacotes não responde"""
    stream = stream or sys.stderr
    url = getattr(err, "url", None) or server_url()
    cause = getattr(err, "cause", None) or err
    logger.debug("connection failure", exc_info=err)
    print(f"Unable to update package catalog (are you offline?)\n"
          f"  server: {url}\n"
          f"  reason: {cause}\n"
          f"Check your network connection and try again.", file=stream)
