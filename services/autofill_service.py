"""
CEP (ViaCEP) and CNPJ (ReceitaWS) lookups used to auto-fill address and
company fields. Upstream answers, including not-found answers, are cached
per key with a TTL and a size cap, and concurrent identical lookups share
one in-flight request.
"""

import os
import time
import asyncio
import logging
from collections import OrderedDict
from typing import Dict, Any, Optional

import httpx

from models.validators import only_digits, validate_cnpj

logger = logging.getLogger("backend.autofill")

VIACEP_URL = "https://viacep.com.br/ws/{cep}/json/"
RECEITAWS_URL = "https://www.receitaws.com.br/v1/cnpj/{cnpj}"
CEP_TIMEOUT = 10.0
CNPJ_TIMEOUT = 15.0
CACHE_TTL = float(os.getenv("AUTOFILL_CACHE_TTL", "86400"))
CACHE_MAX_SIZE = int(os.getenv("AUTOFILL_CACHE_MAX_SIZE", "5000"))


def _format_cep(data: Dict[str, Any]) -> Dict[str, str]:
    return {
        "address": data.get("logradouro") or "",
        "neighborhood": data.get("bairro") or "",
        "city": data.get("localidade") or "",
        "state": data.get("uf") or "",
        "complement": data.get("complemento") or "",
    }


def _format_cnpj(data: Dict[str, Any]) -> Dict[str, str]:
    return {
        "companyName": data.get("nome") or "",
        "fantasyName": data.get("fantasia") or "",
        "companyAddress": data.get("logradouro") or "",
        "companyNumber": data.get("numero") or "",
        "companyCity": data.get("municipio") or "",
        "companyState": data.get("uf") or "",
        "companyCep": data.get("cep") or "",
        "companyPhone": data.get("telefone") or "",
        "companyEmail": data.get("email") or "",
    }


def _failure(error: str, status: int) -> Dict[str, Any]:
    return {"success": False, "error": error, "status": status}


def _cep_result(data: Dict[str, Any]) -> Dict[str, Any]:
    if data.get("erro"):
        return _failure("CEP not found", 404)
    return {"success": True, "data": _format_cep(data)}


def _cnpj_result(data: Dict[str, Any]) -> Dict[str, Any]:
    if data.get("status") != "OK":
        return _failure("CNPJ not found or invalid", 404)
    return {"success": True, "data": _format_cnpj(data)}


class LookupCache:
    """Upstream answers with a TTL and LRU eviction once max_size is reached"""

    def __init__(self, ttl: float = CACHE_TTL, max_size: int = CACHE_MAX_SIZE):
        self.ttl = ttl
        self.max_size = max_size
        self._entries: "OrderedDict[str, tuple[float, Dict[str, Any]]]" = OrderedDict()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, data = entry
        if time.monotonic() - stored_at > self.ttl:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return data

    def set(self, key: str, data: Dict[str, Any]) -> None:
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = (time.monotonic(), data)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class AutoFillService:
    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache_ttl: float = CACHE_TTL,
        cache_max_size: int = CACHE_MAX_SIZE,
    ):
        self.transport = transport
        self._cep_cache = LookupCache(cache_ttl, cache_max_size)
        self._cnpj_cache = LookupCache(cache_ttl, cache_max_size)
        self._in_flight: Dict[str, asyncio.Task] = {}

    async def _get_json(self, url: str, timeout: float) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            resp = await client.get(url, headers={"Accept": "application/json"})
            resp.raise_for_status()
            return resp.json()

    async def _lookup(self, key: str, url: str, timeout: float, cache: LookupCache, cache_key: str):
        try:
            data = await self._get_json(url, timeout)
        except httpx.TimeoutException:
            logger.warning("Lookup timed out: %s", url)
            return _failure("Request timeout", 504)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Lookup failed %s: %s", url, e)
            return _failure(f"Failed to fetch {key.split('-')[0].upper()} data", 502)
        cache.set(cache_key, data)
        return data

    async def _shared(self, key: str, url: str, timeout: float, cache: LookupCache, cache_key: str):
        """Run one upstream request per key; concurrent callers await the same task"""
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._lookup(key, url, timeout, cache, cache_key))
            self._in_flight[key] = task
            task.add_done_callback(lambda _t: self._in_flight.pop(key, None))
        return await asyncio.shield(task)

    async def fetch_cep_data(self, cep: str) -> Dict[str, Any]:
        clean = only_digits(cep)
        if len(clean) != 8:
            return _failure("CEP must have 8 digits", 400)

        cached = self._cep_cache.get(clean)
        if cached is not None:
            return _cep_result(cached)

        outcome = await self._shared(f"cep-{clean}", VIACEP_URL.format(cep=clean), CEP_TIMEOUT, self._cep_cache, clean)
        if outcome.get("success") is False:
            return outcome
        return _cep_result(outcome)

    async def fetch_cnpj_data(self, cnpj: str) -> Dict[str, Any]:
        clean = only_digits(cnpj)
        if len(clean) != 14:
            return _failure("CNPJ must have 14 digits", 400)
        if not validate_cnpj(clean):
            return _failure("Invalid CNPJ", 400)

        cached = self._cnpj_cache.get(clean)
        if cached is not None:
            return _cnpj_result(cached)

        outcome = await self._shared(
            f"cnpj-{clean}", RECEITAWS_URL.format(cnpj=clean), CNPJ_TIMEOUT, self._cnpj_cache, clean
        )
        if outcome.get("success") is False:
            return outcome
        return _cnpj_result(outcome)

    def clear_cache(self) -> None:
        self._cep_cache.clear()
        self._cnpj_cache.clear()
        logger.info("Auto-fill cache cleared")

    def cache_size(self) -> Dict[str, int]:
        return {"cep": len(self._cep_cache), "cnpj": len(self._cnpj_cache)}


autofill_service = AutoFillService()


def get_autofill_service() -> AutoFillService:
    return autofill_service
