"""Loaders for the JSON sample datasets under ``data/``.

``manifest.json`` names the files of each dataset::

    {
      "initial": {"invoices": "...", "corrections": "...", "reference": "..."},
      "full": {"invoices": "...", "corrections": "...",
               "purchaseOrders": "...", "deliveryNotes": "..."}
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from backend.core.config import settings

from .dto import HumanDecision, ReferenceData

DATASETS = ("initial", "full")
MANIFEST_NAME = "manifest.json"


@dataclass
class Dataset:
    name: str
    invoices: List[Dict[str, Any]] = field(default_factory=list)
    corrections: List[Dict[str, Any]] = field(default_factory=list)
    reference: ReferenceData = field(default_factory=ReferenceData)

    def invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        for raw in self.invoices:
            if raw.get("invoiceId", raw.get("invoice_id")) == invoice_id:
                return raw
        return None

    def decisions_for(self, invoice_id: str) -> List[HumanDecision]:
        return [
            HumanDecision.from_dict(raw)
            for raw in self.corrections
            if raw.get("invoiceId", raw.get("invoice_id")) == invoice_id
        ]


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _read_list(path: Path) -> List[Dict[str, Any]]:
    data = _read_json(path)
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array")
    return data


def load_manifest(data_dir: Optional[Path] = None) -> Dict[str, Mapping[str, str]]:
    data_dir = Path(data_dir or settings.DATA_DIR)
    manifest = _read_json(data_dir / MANIFEST_NAME)
    if not isinstance(manifest, dict):
        raise ValueError(f"{data_dir / MANIFEST_NAME} must contain a JSON object")
    return manifest


def load_reference(data_dir: Path, dataset: str, manifest: Mapping[str, Mapping[str, str]]) -> ReferenceData:
    """``initial`` ships one reference file, ``full`` separate PO and delivery-note files."""
    files = manifest[dataset]
    if dataset == "initial":
        return ReferenceData.from_dict(_read_json(data_dir / files["reference"]))
    return ReferenceData.from_dict(
        {
            "purchaseOrders": _read_list(data_dir / files["purchaseOrders"]),
            "deliveryNotes": _read_list(data_dir / files["deliveryNotes"]),
        }
    )


def load_dataset(dataset: str = "full", data_dir: Optional[Path] = None) -> Dataset:
    if dataset not in DATASETS:
        raise ValueError(f"unknown dataset {dataset!r} (expected one of {', '.join(DATASETS)})")
    data_dir = Path(data_dir or settings.DATA_DIR)
    manifest = load_manifest(data_dir)
    if dataset not in manifest:
        raise ValueError(f"dataset {dataset!r} missing from {data_dir / MANIFEST_NAME}")
    files = manifest[dataset]
    return Dataset(
        name=dataset,
        invoices=_read_list(data_dir / files["invoices"]),
        corrections=_read_list(data_dir / files["corrections"]),
        reference=load_reference(data_dir, dataset, manifest),
    )
