"""Tests for the project overview."""

from collections import Counter

from conftest import SAMPLE_FILES
from zen_context.core.content_hash import content_hash
from zen_context.core.extractor import PatternExtractor
from zen_context.core.overview import DEFAULT_RECOMMENDATIONS, build_overview, recommendations_for
from zen_context.core.scanner import FileScanner
from zen_context.core.types import FileRecord


def sample_units(root):
    extractor = PatternExtractor()
    diff = FileScanner().scan(root)
    units = []
    for record in diff.added:
        units.extend(extractor.extract(record, (root / record.path).read_bytes()))
    return units


class TestBuildOverview:
    """Tests for build_overview on the sample shop."""

    def test_counts(self, sample_project):
        overview = build_overview(sample_units(sample_project))

        assert overview.kinds == {"component": 3, "hook": 1, "store": 1, "util": 4, "raw": 0}
        assert overview.component_roles["page"] == 1
        assert overview.component_roles["presentation"] == 2
        assert overview.component_patterns["Memoization"] == 1
        assert overview.hook_types == {"state": 1}
        assert overview.store_types == {"zustand": 1}
        assert overview.persistent_stores == 1
        assert overview.degraded == 0

    def test_recommendations(self, sample_project):
        overview = build_overview(sample_units(sample_project))
        assert overview.recommendations == [
            "Use React.memo for presentational components",
            "Extract complex state logic into custom hooks",
            "Use Zustand for global state management",
        ]

    def test_empty(self):
        overview = build_overview([])
        assert overview.kinds == {"component": 0, "hook": 0, "store": 0, "util": 0, "raw": 0}
        assert overview.recommendations == list(DEFAULT_RECOMMENDATIONS)

    def test_to_dict(self, sample_project):
        data = build_overview(sample_units(sample_project)).to_dict()
        assert data["entities"] == ["Product"]
        assert set(data) >= {"kinds", "component_roles", "recommendations"}

    def test_sample_has_no_markdown_units(self, sample_project):
        paths = {u.path for u in sample_units(sample_project)}
        assert "README.md" in SAMPLE_FILES
        assert "README.md" not in paths


class TestRecommendations:
    def test_container_and_presentation(self):
        recs = recommendations_for(Counter(presentation=1, container=2), Counter(), Counter(), Counter())
        assert recs == ["Follow the presentational/container component pattern"]

    def test_redux_when_no_zustand(self):
        recs = recommendations_for(Counter(), Counter(), Counter(), Counter(redux=1, context=1))
        assert recs == ["Use Redux with Redux Toolkit for global state management"]

    def test_context_store(self):
        recs = recommendations_for(Counter(), Counter(), Counter(), Counter(context=1))
        assert recs == ["Use React Context for shared state"]

    def test_fallback(self):
        assert recommendations_for(Counter(), Counter(), Counter(), Counter()) == list(DEFAULT_RECOMMENDATIONS)


SERVICE_FILES = {
    "src/api/cart.ts": (
        'import axios from "axios";\n\n'
        "export async function fetchCart() {\n  return (await axios.get(\"/cart\")).data;\n}\n\n"
        "export const deleteCartItem = async (id) => {\n  await axios.delete(`/cart/${id}`);\n};\n"
    ),
    "src/services/orders.ts": (
        'import { useQuery } from "@tanstack/react-query";\n\n'
        'export async function fetchOrders() {\n  return fetch("/orders").then((r) => r.json());\n}\n\n'
        'export function useOrders() {\n  return useQuery({ queryKey: ["orders"], queryFn: fetchOrders });\n}\n'
    ),
}


def service_units():
    extractor = PatternExtractor()
    units = []
    for path, text in SERVICE_FILES.items():
        data = text.encode("utf-8")
        record = FileRecord(path=path, hash=content_hash(data), size=len(data), mtime=1.0)
        units.extend(extractor.extract(record, text))
    return units


class TestServices:
    """Service files in the overview."""

    def test_service_types_counted_per_file(self):
        overview = build_overview(service_units())
        assert overview.service_types == {"react-query": 1, "rest": 1}
        assert overview.endpoints == ["deleteCartItem", "fetchCart", "fetchOrders"]
        assert overview.hook_types == {"data": 1}

    def test_react_query_recommendation(self):
        overview = build_overview(service_units())
        assert "Use React Query hooks for server state" in overview.recommendations

    def test_rest_only_recommendation(self):
        recs = recommendations_for(Counter(), Counter(), Counter(), Counter(), Counter(rest=2))
        assert recs == ["Keep API calls in the service layer"]

    def test_to_dict(self):
        data = build_overview(service_units()).to_dict()
        assert data["service_types"] == {"react-query": 1, "rest": 1}
        assert "fetchOrders" in data["endpoints"]

    def test_sample_has_no_services(self, sample_project):
        overview = build_overview(sample_units(sample_project))
        assert overview.service_types == {}
        assert overview.endpoints == []
