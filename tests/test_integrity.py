import asyncio
import json

import pytest

pytest.importorskip("aiosqlite")

from link_integrity.dialects import SqliteIntegrityQuery
from link_integrity.integrity import LinkIntegrityService
from link_integrity import locks
from link_integrity.locks import hold_base_lock
from link_integrity.models import IntegrityIssueType

from integrity_fixtures import (
    add_field,
    add_record,
    build_cross_base,
    build_many_many,
    build_many_one,
    execute,
    fetch,
    link_many_many,
    link_options,
    link_value,
    make_service,
    open_sqlite,
)


def _types(item):
    return [issue.type for issue in item.issues]


@pytest.mark.asyncio
async def test_orphaned_junction_row_is_found_and_removed(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        await build_many_many(db)
        await link_many_many(db, "test", "test")
        service = make_service(db)

        result = await service.link_integrity_check("bse1")
        assert result.has_issues
        by_field = {item.field_id: item for item in result.link_field_issues}
        assert set(by_field) == {"fldAB", "fldBA"}
        assert _types(by_field["fldAB"]) == [
            IntegrityIssueType.MISSING_RECORD_REFERENCE,
            IntegrityIssueType.MISSING_RECORD_REFERENCE,
        ]
        assert by_field["fldAB"].table_name == "Table A"
        assert by_field["fldAB"].base_id is None

        fixed = await service.link_integrity_fix("bse1")
        assert [issue.type for issue in fixed] == [IntegrityIssueType.MISSING_RECORD_REFERENCE]
        assert await fetch(db, 'SELECT * FROM "junction_ab"') == []

        result = await service.link_integrity_check("bse1")
        assert not result.has_issues
        assert result.link_field_issues == []
        assert await service.link_integrity_fix("bse1") == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_fix_rebuilds_projections_after_clearing_keys(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        await build_many_one(db)
        await add_record(db, "tbl_customers", "cus1", title="Ada", fld_orders=[{"id": "ord1", "title": "O1"}])
        await add_record(
            db, "tbl_orders", "ord1", title="O1", __fk_customer="cus1", fld_customer={"id": "cus1", "title": "Ada"}
        )
        await add_record(
            db,
            "tbl_orders",
            "ord2",
            title="O2",
            __fk_customer="cus_gone",
            fld_customer={"id": "cus_gone", "title": "Gone"},
        )
        service = make_service(db)

        result = await service.link_integrity_check("bse1")
        by_field = {item.field_id: item for item in result.link_field_issues}
        assert _types(by_field["fldCustomer"]) == [IntegrityIssueType.MISSING_RECORD_REFERENCE]
        assert _types(by_field["fldOrders"]) == [IntegrityIssueType.MISSING_RECORD_REFERENCE]

        fixed = await service.link_integrity_fix("bse1")
        assert [issue.type for issue in fixed] == [
            IntegrityIssueType.MISSING_RECORD_REFERENCE,
            IntegrityIssueType.INVALID_LINK_REFERENCE,
        ]
        assert await link_value(db, "tbl_orders", "fld_customer", "ord2") is None
        assert await link_value(db, "tbl_orders", "fld_customer", "ord1") == {"id": "cus1", "title": "Ada"}

        assert not (await service.link_integrity_check("bse1")).has_issues
        assert await service.link_integrity_fix("bse1") == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_projection_equals_join_after_fix(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        await build_many_many(db)
        for n in range(1, 4):
            await add_record(db, "tbl_a", f"recA{n}", title=f"A{n}")
            await add_record(db, "tbl_b", f"recB{n}", title=f"B{n}")
        pairs = [("recA1", "recB3"), ("recA1", "recB1"), ("recA2", "recB1"), ("recA3", "recB2")]
        for a_id, b_id in pairs:
            await link_many_many(db, a_id, b_id)
        service = make_service(db)

        await service.link_integrity_fix("bse1")

        for n in range(1, 4):
            expected = sorted(b for a, b in pairs if a == f"recA{n}")
            value = await link_value(db, "tbl_a", "fld_b", f"recA{n}")
            assert value == [{"id": b, "title": "B" + b[-1]} for b in expected]
        for n in range(1, 4):
            expected = sorted(a for a, b in pairs if b == f"recB{n}")
            value = await link_value(db, "tbl_b", "fld_a", f"recB{n}")
            assert value == [{"id": a, "title": "A" + a[-1]} for a in expected]
        assert not (await service.link_integrity_check("bse1")).has_issues
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_null_keys_produce_no_issues(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        await build_many_one(db)
        await add_record(db, "tbl_customers", "cus1", title="Ada")
        await add_record(db, "tbl_orders", "ord1", title="O1")
        service = make_service(db)
        result = await service.link_integrity_check("bse1")
        assert not result.has_issues
        assert await link_value(db, "tbl_orders", "fld_customer", "ord1") is None
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_cross_base_links_resolve_from_both_bases(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        await build_cross_base(db)
        await add_record(db, "bse2_people", "per1", title="Grace", fld_projects=[{"id": "prj1", "title": "Apollo"}])
        await add_record(
            db, "bse1_projects", "prj1", title="Apollo", __fk_owner="per1", fld_owner={"id": "per1", "title": "Grace"}
        )
        service = make_service(db)

        assert not (await service.link_integrity_check("bse2")).has_issues
        assert not (await service.link_integrity_check("bse1")).has_issues
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_cross_base_issue_carries_owning_base(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        await build_cross_base(db)
        await add_record(db, "bse2_people", "per1", title="Grace")
        await add_record(
            db, "bse1_projects", "prj1", title="Apollo", __fk_owner="per1", fld_owner={"id": "per9", "title": "?"}
        )
        service = make_service(db)

        result = await service.link_integrity_check("bse2")
        by_field = {item.field_id: item for item in result.link_field_issues}
        cross = by_field["fldOwner"]
        assert cross.base_id == "bse1"
        assert cross.base_name == "Base One"
        assert cross.table_name == "Projects"
        assert _types(cross) == [IntegrityIssueType.INVALID_LINK_REFERENCE]
        assert by_field["fldProjects"].base_id is None

        payload = result.to_payload()
        owner_item = next(item for item in payload["linkFieldIssues"] if item["fieldId"] == "fldOwner")
        assert owner_item["baseId"] == "bse1"
        assert owner_item["baseName"] == "Base One"
        assert owner_item["issues"][0]["type"] == "InvalidLinkReference"
        own_item = next(item for item in payload["linkFieldIssues"] if item["fieldId"] == "fldProjects")
        assert "baseId" not in own_item

        await service.link_integrity_fix("bse2")
        assert await link_value(db, "bse1_projects", "fld_owner", "prj1") == {"id": "per1", "title": "Grace"}
        assert not (await service.link_integrity_check("bse2")).has_issues
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_cross_base_fields_of_deleted_base_are_skipped(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        await build_cross_base(db)
        await add_record(
            db, "bse1_projects", "prj1", title="Apollo", __fk_owner=None, fld_owner={"id": "x", "title": "?"}
        )
        await execute(db, "UPDATE base SET deleted_time = CURRENT_TIMESTAMP WHERE id = ?", "bse1")
        service = make_service(db)

        result = await service.link_integrity_check("bse2")
        assert [item.field_id for item in result.link_field_issues] == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_structural_issues_are_reported_not_fixed(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        await build_many_many(db)
        await add_field(
            db,
            "fldNoTable",
            "tblA",
            "No Table",
            "fld_b",
            options=link_options("tblGone", "junction_ab", "__fk_a", "__fk_b", lookup_field_id="tblB_title"),
            is_multiple=True,
        )
        await add_field(
            db,
            "fldNoHost",
            "tblA",
            "No Host",
            "fld_b",
            options=link_options("tblB", "junction_gone", "__fk_a", "__fk_b", lookup_field_id="tblB_title"),
            is_multiple=True,
        )
        await add_field(
            db,
            "fldNoKey",
            "tblA",
            "No Key",
            "fld_b",
            options=link_options("tblB", "junction_ab", "__fk_a", "__fk_zzz", lookup_field_id="tblB_title"),
            is_multiple=True,
        )
        await add_field(
            db,
            "fldNoSymmetric",
            "tblA",
            "No Symmetric",
            "fld_b",
            options=link_options(
                "tblB",
                "junction_ab",
                "__fk_a",
                "__fk_b",
                lookup_field_id="tblB_title",
                symmetric_field_id="fldGone",
            ),
            is_multiple=True,
        )
        service = make_service(db)

        result = await service.link_integrity_check("bse1")
        by_field = {item.field_id: item for item in result.link_field_issues}
        assert set(by_field) == {"fldNoTable", "fldNoHost", "fldNoKey", "fldNoSymmetric"}

        assert _types(by_field["fldNoTable"]) == [IntegrityIssueType.FOREIGN_TABLE_NOT_FOUND]
        assert by_field["fldNoTable"].issues[0].message == (
            "Foreign table with ID tblGone not found for link field "
            "(Field Name: No Table, Field ID: fldNoTable) in table Table A"
        )
        assert _types(by_field["fldNoHost"]) == [IntegrityIssueType.FOREIGN_KEY_HOST_TABLE_NOT_FOUND]
        assert _types(by_field["fldNoKey"]) == [IntegrityIssueType.FOREIGN_KEY_NOT_FOUND]
        assert by_field["fldNoKey"].issues[0].message.startswith('Foreign key name "__fk_zzz" is missing')
        assert _types(by_field["fldNoSymmetric"]) == [IntegrityIssueType.SYMMETRIC_FIELD_NOT_FOUND]

        assert await service.link_integrity_fix("bse1") == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_missing_link_column_is_reported_not_compared(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        await build_many_one(db)
        await add_field(
            db,
            "fldGhost",
            "tblOrders",
            "Ghost",
            "fld_ghost",
            options=link_options(
                "tblCustomers", "tbl_orders", "__id", "__fk_customer", lookup_field_id="tblCustomers_title"
            ),
        )
        await add_record(db, "tbl_customers", "cus1", title="Ada")
        await add_record(
            db, "tbl_orders", "ord1", title="O1", __fk_customer="cus1", fld_customer={"id": "cus1", "title": "Ada"}
        )
        await add_record(
            db, "tbl_orders", "ord2", title="O2", __fk_customer="cus_gone", fld_customer={"id": "cus_gone"}
        )
        service = make_service(db)

        table = await service.metadata.get_table("tblOrders")
        field = await service.metadata.get_link_field("fldGhost")
        issues = await service.check_link_field(table, field)
        assert [issue.type for issue in issues] == [
            IntegrityIssueType.FOREIGN_KEY_NOT_FOUND,
            IntegrityIssueType.MISSING_RECORD_REFERENCE,
        ]
        assert issues[0].message == (
            'Link column "fld_ghost" is missing for link field '
            "(Field Name: Ghost, Field ID: fldGhost) in table Orders"
        )

        fixed = await service.link_integrity_fix("bse1")
        assert all("fldGhost" not in issue.message for issue in fixed)
        assert any(
            issue.message.startswith("Fixed 1 inconsistent links for link field (Field Name: Customer,")
            for issue in fixed
        )
        assert await link_value(db, "tbl_orders", "fld_customer", "ord2") is None
        assert await service.link_fields.fix("tblOrders", "fldGhost") is None

        after = await service.link_integrity_check("bse1")
        assert [(item.field_id, _types(item)) for item in after.link_field_issues] == [
            ("fldGhost", [IntegrityIssueType.FOREIGN_KEY_NOT_FOUND])
        ]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_lookup_and_deleted_link_fields_are_ignored(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        await build_many_many(db)
        broken = link_options("tblGone", "junction_gone", "__fk_a", "__fk_b", lookup_field_id="tblB_title")
        await add_field(db, "fldLookup", "tblA", "Lookup", "fld_lookup", options=broken, is_lookup=True)
        await add_field(db, "fldDeleted", "tblA", "Deleted", "fld_deleted", options=broken)
        await execute(db, "UPDATE field SET deleted_time = CURRENT_TIMESTAMP WHERE id = ?", "fldDeleted")
        service = make_service(db)

        assert not (await service.link_integrity_check("bse1")).has_issues
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_unknown_base_has_no_issues(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        service = make_service(db)
        result = await service.link_integrity_check("bseMissing")
        assert result.to_payload() == {"hasIssues": False, "linkFieldIssues": []}
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_fix_waits_for_base_lock(tmp_path):
    db = await open_sqlite(tmp_path)
    try:
        await build_many_many(db, base_id="bseLocked")
        await link_many_many(db, "test", "test")
        service = make_service(db)

        async with hold_base_lock("bseLocked"):
            task = asyncio.create_task(service.link_integrity_fix("bseLocked"))
            await asyncio.sleep(0.05)
            assert not task.done()
            assert locks._base_lock_users["bseLocked"] == 2
        fixed = await task
        assert len(fixed) == 1
        assert "bseLocked" not in locks._base_locks
        assert "bseLocked" not in locks._base_lock_users
    finally:
        await db.close()


def test_service_rejects_mismatched_dialect(tmp_path):
    from link_integrity.dialects import PostgresIntegrityQuery
    from link_integrity.db import SqliteDatabase

    db = SqliteDatabase(str(tmp_path / "integrity.db"))
    with pytest.raises(ValueError):
        LinkIntegrityService(db, PostgresIntegrityQuery())
    assert LinkIntegrityService(db, SqliteIntegrityQuery()).metadata is not None


def test_issue_payload_uses_camel_case():
    from link_integrity.models import IntegrityIssue, LinkFieldCheckItem

    item = LinkFieldCheckItem(
        table_id="tblA",
        table_name="Table A",
        field_id="fldAB",
        field_name="Link B",
        issues=[IntegrityIssue(type=IntegrityIssueType.MISSING_RECORD_REFERENCE, message="m")],
    )
    assert json.loads(json.dumps(item.to_payload())) == {
        "tableId": "tblA",
        "tableName": "Table A",
        "fieldId": "fldAB",
        "fieldName": "Link B",
        "issues": [{"type": "MissingRecordReference", "message": "m"}],
    }
