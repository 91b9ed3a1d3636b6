from pathlib import Path

from landedcost.tariff.local_index import IndexEntry, LocalTariffIndex, build_match_query


def test_build_match_query_prefix_tokens():
    assert build_match_query("Autoelevador eléctrico de 3 t") == "autoelevador* electrico*"
    assert build_match_query("a b") is None


def test_upsert_and_search_with_accents(tmp_path: Path):
    index = LocalTariffIndex(tmp_path / "index.db")
    written = index.upsert(
        [
            IndexEntry(code="84271019", label="Autoelevadores eléctricos", breadcrumbs=("Sección XVI",)),
            IndexEntry(code="8704.21.00", label="Vehículos para transporte de mercancías"),
            IndexEntry(code="12", label="basura"),
        ]
    )
    assert written == 2
    assert index.count() == 2

    hits = index.search("autoelevador electrico")
    assert [hit.code for hit in hits] == ["8427.10.19"]
    assert hits[0].breadcrumbs == ("Sección XVI",)
    index.close()


def test_upsert_keeps_existing_label_and_refreshes_fts(tmp_path: Path):
    index = LocalTariffIndex(tmp_path / "index.db")
    index.upsert([IndexEntry(code="8704.21.00", label="Camionetas")])
    index.upsert([IndexEntry(code="8704.21.00", label=None)])
    assert index.get("87042100").label == "Camionetas"

    index.upsert([IndexEntry(code="8704.21.00", label="Pick-ups diésel")])
    assert index.search("camionetas") == []
    assert [hit.code for hit in index.search("pick diesel")] == ["8704.21.00"]
    index.close()


def test_heading_filter(tmp_path: Path):
    index = LocalTariffIndex(tmp_path / "index.db")
    index.upsert(
        [
            IndexEntry(code="8704.21.00", label="Vehículos diésel de carga"),
            IndexEntry(code="8703.32.10", label="Vehículos diésel de pasajeros"),
        ]
    )
    hits = index.search("vehiculos diesel", heading_filter="8704")
    assert [hit.code for hit in hits] == ["8704.21.00"]
    index.close()


def test_index_persists_across_instances(tmp_path: Path):
    path = tmp_path / "index.db"
    first = LocalTariffIndex(path)
    first.upsert([IndexEntry(code="8428.10.00", label="Ascensores")])
    first.close()

    second = LocalTariffIndex(path)
    assert second.get("8428.10.00").label == "Ascensores"
    second.close()
