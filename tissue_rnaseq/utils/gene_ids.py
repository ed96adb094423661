"""
Gene identifier handling for enrichment.

- Strips Ensembl version suffixes (ENSMUSG00000000001.4 -> ENSMUSG00000000001)
- Maps Ensembl gene ids to symbols via mygene, with a local JSON cache
"""

import hashlib
import json
import logging
import re
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ENSEMBL_PATTERN = re.compile(r"^ENS[A-Z]*G\d+(\.\d+)?$")


def strip_version(gene_id) -> str:
    """Remove a trailing ``.N`` version from Ensembl-style identifiers."""
    gene_id = str(gene_id)
    if ENSEMBL_PATTERN.match(gene_id):
        return gene_id.split(".", 1)[0]
    return gene_id


def is_ensembl(gene_id) -> bool:
    return bool(ENSEMBL_PATTERN.match(str(gene_id)))


class GeneIdMapper:
    """Ensembl -> gene symbol mapping backed by mygene.info.

    Results are cached per (species, id) in a JSON file so that repeated
    contrasts on the same tissue do not re-query the service.
    """

    CACHE_DIR: Path = Path.home() / ".tissue_rnaseq_cache"

    def __init__(
        self,
        species: str = "mouse",
        enable_cache: bool = True,
        cache_ttl: int = 7 * 86400,
        cache_dir: Optional[Path] = None
    ):
        self.species = species
        self.enable_cache = enable_cache
        self.cache_ttl = cache_ttl
        self.cache_dir = Path(cache_dir) if cache_dir else self.CACHE_DIR
        self._memory: Dict[str, Optional[str]] = {}

        if enable_cache:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self._memory.update(self._read_cache())

    def _get_cache_path(self) -> Path:
        key = hashlib.md5(f"mygene:{self.species}".encode()).hexdigest()
        return self.cache_dir / f"gene_symbols_{key}.json"

    def _read_cache(self) -> Dict[str, Optional[str]]:
        cache_path = self._get_cache_path()
        if not cache_path.exists():
            return {}

        try:
            with open(cache_path, 'r', encoding='utf-8') as f:
                cached = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable gene id cache {cache_path}: {e}")
            return {}

        if time.time() - cached.get('timestamp', 0) > self.cache_ttl:
            cache_path.unlink()
            return {}

        return cached.get('symbols', {})

    def _write_cache(self) -> None:
        if not self.enable_cache:
            return
        with open(self._get_cache_path(), 'w', encoding='utf-8') as f:
            json.dump({'timestamp': time.time(), 'symbols': self._memory}, f)

    def _query(self, ensembl_ids: List[str]) -> Dict[str, Optional[str]]:
        """Query mygene for ids not yet known."""
        import mygene

        mg = mygene.MyGeneInfo()
        hits = mg.querymany(
            ensembl_ids,
            scopes='ensembl.gene',
            fields='symbol',
            species=self.species,
            returnall=False,
            verbose=False
        )

        mapping: Dict[str, Optional[str]] = {gid: None for gid in ensembl_ids}
        for hit in hits:
            query = str(hit.get('query'))
            if hit.get('notfound') or 'symbol' not in hit:
                continue
            # First hit wins for ids mapping to several genes
            if mapping.get(query) is None:
                mapping[query] = hit['symbol']
        return mapping

    def to_symbols(self, gene_ids: Iterable) -> Dict[str, Optional[str]]:
        """Map ids to symbols. Non-Ensembl ids are returned unchanged.

        Returns:
            {original id: symbol or None when unmapped}
        """
        gene_ids = [str(g) for g in gene_ids]
        stripped = {g: strip_version(g) for g in gene_ids}

        to_fetch = sorted({
            s for s in stripped.values()
            if is_ensembl(s) and s not in self._memory
        })
        if to_fetch:
            logger.info(f"Querying mygene for {len(to_fetch)} Ensembl ids ({self.species})...")
            self._memory.update(self._query(to_fetch))
            self._write_cache()

        result = {}
        for original, clean in stripped.items():
            result[original] = self._memory.get(clean) if is_ensembl(clean) else clean
        return result
