"""Shared fixtures: an isolated environment and a small React/TypeScript project."""

from pathlib import Path

import pytest

from zen_context.core.config import ENV_OVERRIDES, EngineConfig
from zen_context.core.content_hash import content_hash
from zen_context.core.types import SourceUnit, embedding_text, make_unit_id

SAMPLE_FILES = {
    "src/components/Button.tsx": """\
import React from 'react';

interface ButtonProps {
  label: string;
  onClick: () => void;
}

export function Button({ label, onClick }: ButtonProps) {
  return <button onClick={onClick}>{label}</button>;
}
""",
    "src/components/ProductCard.tsx": """\
import React from 'react';
import { Button } from './Button';

export interface Product {
  id: string;
  title: string;
  price: number;
}

interface ProductCardProps {
  product: Product;
  onAddToCart: (id: string) => void;
}

function ProductCard({ product, onAddToCart }: ProductCardProps) {
  return (
    <div className="product-card">
      <h3>{product.title}</h3>
      <Button label="Add to cart" onClick={() => onAddToCart(product.id)} />
    </div>
  );
}

export default React.memo(ProductCard);
""",
    "src/pages/Checkout.tsx": """\
import { useQuery } from '@tanstack/react-query';
import { useCartStore } from '../store/cartStore';

export default function Checkout() {
  const items = useCartStore((s) => s.items);
  const { data } = useQuery({ queryKey: ['shipping'] });
  return <main>{items.length} items, shipping {data?.price}</main>;
}
""",
    "src/hooks/useCart.ts": """\
import { useState } from 'react';

export function useCart() {
  const [items, setItems] = useState<string[]>([]);
  return { items, setItems };
}
""",
    "src/store/cartStore.ts": """\
import { create } from 'zustand';
import { persist } from 'zustand/middleware';

export const useCartStore = create(persist((set) => ({ items: [] }), { name: 'cart' }));
""",
    "src/utils/format.ts": """\
export function formatPrice(cents: number): string {
  return `$${(cents / 100).toFixed(2)}`;
}

export const clamp = (n: number, lo: number, hi: number) => Math.min(Math.max(n, lo), hi);
""",
    "scripts/seed.py": """\
import json


def load_products(path):
    with open(path) as f:
        return json.load(f)


class ProductRepo:
    def __init__(self, items):
        self.items = items
""",
    # Never indexed
    "README.md": "# Shop\n",
    "node_modules/react/index.js": "export function createElement() {}\n",
    "generated/schema.ts": "export const schema = {};\n",
    "public/vendor.min.js": "export function x(){}\n",
    ".gitignore": "generated/\n",
}

SAMPLE_UNIT_COUNT = 9
SAMPLE_FILE_COUNT = 7


def write_files(root: Path, files: dict[str, str]) -> Path:
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return root


def make_unit(path: str, name: str, kind: str = "util", excerpt: str | None = None) -> SourceUnit:
    """A SourceUnit built the way the extractor builds one."""
    if excerpt is None:
        excerpt = f"export function {name}() {{\n  return null;\n}}"
    return SourceUnit(
        id=make_unit_id(path, name),
        path=path,
        content_hash=content_hash(embedding_text(kind, name, excerpt)),
        kind=kind,
        symbol_name=name,
        excerpt=excerpt,
        last_modified=0.0,
    )


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep the user's config file and ZEN_* variables out of every test."""
    for env_var in ENV_OVERRIDES:
        monkeypatch.delenv(env_var, raising=False)
    for env_var in ("ZEN_DEBUG", "ZEN_VERBOSE", "ZEN_QUIET", "ZEN_EMBEDDING_API_KEY", "OPENAI_API_KEY"):
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setenv("ZEN_CONFIG_FILE", str(tmp_path / "user-config" / "config.yaml"))


@pytest.fixture
def sample_project(tmp_path):
    return write_files(tmp_path / "shop", SAMPLE_FILES)


@pytest.fixture
def engine_config():
    return EngineConfig(max_workers=2, batch_size=3)
