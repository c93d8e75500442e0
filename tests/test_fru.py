"""Tests for firestarter/firmware/fru.py with a simulated BMC."""

from __future__ import annotations

import pytest

from firestarter.decisions import Decision
from firestarter.errors import ExecutionError, OperatorAbort, PreconditionError, VerificationError
from firestarter.firmware.fru import (
    BoardInfo,
    FruProvisioner,
    ProvisionOutcome,
    classify_read_error,
    parse_board_fields,
)
from firestarter.mocks import FakeCommandRunner, ScriptedDecisionProvider, make_result

SERIAL = "INF01A912345678"

PRINT_OK = (
    " Board Mfg Date        : Mon Jan  1 00:00:00 1996\n"
    " Board Mfg             : ACME\n"
    " Board Product         : SP2C621D32TM3\n"
    " Board Serial          : {serial}\n"
)


class FakeBmc:
    """FRU chip behind ``ipmitool fru`` plus a ``frugen`` that encodes the board area."""

    def __init__(self, runner: FakeCommandRunner, board=None, header_error="", size=2048):
        self.board = board
        self.header_error = header_error
        self.size = size
        self.writes: list[bytes] = []
        self.corrupt_serial = ""
        runner.on("ipmitool fru print", self._print)
        runner.on("ipmitool fru read", self._read)
        runner.on("ipmitool fru write", self._write)
        runner.on("frugen", self._frugen)

    def _print(self, argv):
        if self.header_error:
            return make_result(argv, stderr=self.header_error + "\n", returncode=1)
        if self.board is None:
            return make_result(argv, stdout=" FRU Device Description : Builtin FRU Device (ID 0)\n")
        return make_result(argv, stdout=(
            f" Board Mfg             : {self.board.manufacturer}\n"
            f" Board Product         : {self.board.product}\n"
            f" Board Serial          : {self.board.serial}\n"
        ))

    def _read(self, argv):
        return make_result(argv, stdout=f"Fru Size         : {self.size} bytes\nDone\n")

    def _write(self, argv):
        with open(argv[-1], "rb") as f:
            data = f.read()
        self.writes.append(data)
        if not data.strip(b"\x00"):
            self.header_error = ""
            self.board = None
        else:
            mfg, product, serial = data.decode().split("|")
            self.board = BoardInfo(mfg, product, self.corrupt_serial or serial)
        return make_result(argv, stdout="Size to Write   : 2048 bytes\n")

    def _frugen(self, argv):
        opts = dict(zip(argv[1:-1:2], argv[2:-1:2]))
        with open(argv[-1], "wb") as f:
            f.write(f"{opts['--board-mfg']}|{opts['--board-pname']}|{opts['--board-serial']}".encode())
        return make_result(argv)


def _provisioner(runner, decisions, console, tmp_path, **kw):
    return FruProvisioner(
        runner, decisions, "ACME", "SP2C621D32TM3", console,
        tmp_dir=str(tmp_path), sleep=lambda s: None, **kw,
    )


class TestParsing:
    def test_board_fields(self):
        board = parse_board_fields(PRINT_OK.format(serial=SERIAL))
        assert board == BoardInfo("ACME", "SP2C621D32TM3", SERIAL)

    def test_no_board_area(self):
        assert parse_board_fields(" Product Name : X\n") is None

    @pytest.mark.parametrize("text,expected", [
        ("Unknown FRU header version 0x00", (True, True)),
        ("No FRU data available", (True, False)),
        ("FRU Read failed", (False, True)),
        ("something odd", (True, True)),
    ])
    def test_read_errors(self, text, expected):
        assert classify_read_error(text) == expected

    def test_valid_serial(self):
        assert not BoardInfo(serial="Not Specified").has_valid_serial
        assert BoardInfo(serial=SERIAL).has_valid_serial


class TestProvision:
    def test_already_set_writes_nothing(self, runner, decisions, console, tmp_path):
        bmc = FakeBmc(runner, board=BoardInfo("ACME", "SP2C621D32TM3", SERIAL))
        outcome = _provisioner(runner, decisions, console, tmp_path).provision(SERIAL)
        assert outcome is ProvisionOutcome.ALREADY_SET
        assert bmc.writes == []
        assert runner.count("frugen") == 0

    def test_update_valid_chip(self, runner, decisions, console, tmp_path):
        bmc = FakeBmc(runner, board=BoardInfo("ACME", "SP2C621D32TM3", "INF01A900000000"))
        outcome = _provisioner(runner, decisions, console, tmp_path).provision(SERIAL)
        assert outcome is ProvisionOutcome.WRITTEN
        assert len(bmc.writes) == 1
        assert bmc.board.serial == SERIAL
        assert list(tmp_path.iterdir()) == []

    def test_corrupt_header_is_blanked_first(self, runner, decisions, console, tmp_path):
        bmc = FakeBmc(runner, header_error="Unknown FRU header version 0x00")
        outcome = _provisioner(runner, decisions, console, tmp_path).provision(SERIAL)
        assert outcome is ProvisionOutcome.WRITTEN
        assert bmc.writes[0] == b"\x00" * 2048
        assert bmc.board == BoardInfo("ACME", "SP2C621D32TM3", SERIAL)
        frugen = runner.calls_to("frugen")[0]
        assert frugen[1:-1] == ["--board-mfg", "ACME", "--board-pname", "SP2C621D32TM3",
                                "--board-serial", SERIAL, "--ascii"]

    def test_size_mismatch_refuses_blank(self, runner, decisions, console, tmp_path):
        bmc = FakeBmc(runner, header_error="Unknown FRU header version 0x00", size=4096)
        with pytest.raises(PreconditionError, match="4096 bytes"):
            _provisioner(runner, decisions, console, tmp_path).provision(SERIAL)
        assert bmc.writes == []

    def test_verify_lists_mismatched_fields(self, runner, decisions, console, tmp_path):
        bmc = FakeBmc(runner)
        provisioner = _provisioner(runner, decisions, console, tmp_path)
        bmc.board = BoardInfo("Other", "SP2C621D32TM3", "GARBLED")
        with pytest.raises(VerificationError) as info:
            provisioner.verify(SERIAL)
        assert [m[0] for m in info.value.mismatches] == ["manufacturer", "serial"]

    def test_verify_failure_goes_to_operator(self, runner, console, tmp_path):
        bmc = FakeBmc(runner, board=BoardInfo("ACME", "SP2C621D32TM3", "OLD"))
        bmc.corrupt_serial = "GARBLED"
        decisions = ScriptedDecisionProvider([Decision.RETRY, Decision.SKIP])
        outcome = _provisioner(runner, decisions, console, tmp_path).provision(SERIAL)
        assert outcome is ProvisionOutcome.SKIPPED
        assert len(bmc.writes) == 2
        assert "serial: expected" in decisions.contexts[0].message

    def test_abort(self, runner, console, tmp_path):
        FakeBmc(runner, board=BoardInfo("ACME", "SP2C621D32TM3", "OLD"))
        runner.on("frugen", returncode=1, stderr="ERROR: bad option\n")
        decisions = ScriptedDecisionProvider([Decision.ABORT])
        with pytest.raises(OperatorAbort, match="frugen failed"):
            _provisioner(runner, decisions, console, tmp_path).provision(SERIAL)

    def test_empty_generated_image(self, runner, decisions, console, tmp_path):
        FakeBmc(runner)
        runner.on("frugen", stdout="")
        provisioner = _provisioner(runner, decisions, console, tmp_path)
        with pytest.raises(ExecutionError, match="empty image"):
            provisioner.generate_image(SERIAL)
        assert list(tmp_path.iterdir()) == []

    def test_unknown_fallbacks(self, runner, decisions, console):
        provisioner = FruProvisioner(runner, decisions, "", "", console)
        assert (provisioner.manufacturer, provisioner.product) == ("Unknown", "Unknown")
