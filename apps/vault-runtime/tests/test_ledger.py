import pathlib
import sys
import unittest

RUNTIME_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(RUNTIME_ROOT) not in sys.path:
    sys.path.insert(0, str(RUNTIME_ROOT))

from trade_vault.crypto import MAX_UINT256  # noqa: E402
from trade_vault.errors import InsufficientAllowance, InsufficientBalance, Revert  # noqa: E402
from trade_vault.ledger import CallContext, Ledger  # noqa: E402


class Recorder:
    address: str

    def __init__(self, ledger: Ledger, token: str, fail: bool = False):
        self.ledger = ledger
        self.token = token
        self.fail = fail
        ledger.deploy(self)

    def handle(self, ctx: CallContext, data: bytes) -> bytes:
        self.ledger.mint(self.token, self.address, 1)
        self.ledger.emit(self.address, "Called", sender=ctx.sender, value=ctx.value)
        if self.fail:
            raise Revert("recorder failed")
        return data[::-1]


class LedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = Ledger()
        self.token = self.ledger.create_token("TKN")
        self.alice = self.ledger.new_address()
        self.bob = self.ledger.new_address()
        self.ledger.mint(self.token, self.alice, 100)

    def test_transaction_rolls_back_on_error(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.ledger.transaction():
                self.ledger.transfer(self.token, self.alice, self.bob, 40)
                self.ledger.emit(self.alice, "Moved")
                raise RuntimeError("abort")
        self.assertEqual(self.ledger.balance_of(self.token, self.alice), 100)
        self.assertEqual(self.ledger.balance_of(self.token, self.bob), 0)
        self.assertEqual(self.ledger.events(), [])

    def test_nested_transaction_joins_outer(self) -> None:
        with self.assertRaises(InsufficientBalance):
            with self.ledger.transaction():
                with self.ledger.transaction():
                    self.ledger.transfer(self.token, self.alice, self.bob, 40)
                self.ledger.transfer(self.token, self.alice, self.bob, 400)
        self.assertEqual(self.ledger.balance_of(self.token, self.bob), 0)

    def test_committed_transaction_persists(self) -> None:
        with self.ledger.transaction():
            self.ledger.transfer(self.token, self.alice, self.bob, 40)
        self.assertEqual(self.ledger.balance_of(self.token, self.bob), 40)

    def test_call_isolates_reverting_target(self) -> None:
        target = Recorder(self.ledger, self.token, fail=True)
        self.ledger.fund_native(self.alice, 10)
        success, data = self.ledger.call(self.alice, target.address, b"\x01", value=3)
        self.assertFalse(success)
        self.assertEqual(data[:4], bytes.fromhex("08c379a0"))
        self.assertEqual(self.ledger.balance_of(self.token, target.address), 0)
        self.assertEqual(self.ledger.native_balance(self.alice), 10)
        self.assertEqual(self.ledger.events("Called"), [])

    def test_call_success_keeps_effects(self) -> None:
        target = Recorder(self.ledger, self.token)
        self.ledger.fund_native(self.alice, 10)
        success, data = self.ledger.call(self.alice, target.address, b"\x01\x02", value=3)
        self.assertTrue(success)
        self.assertEqual(data, b"\x02\x01")
        self.assertEqual(self.ledger.native_balance(target.address), 3)
        self.assertEqual(self.ledger.events("Called")[0].args, {"sender": self.alice, "value": 3})

    def test_call_to_account_without_code(self) -> None:
        self.assertEqual(self.ledger.call(self.alice, self.bob, b"\xde\xad"), (True, b""))

    def test_call_with_unfunded_value_fails(self) -> None:
        target = Recorder(self.ledger, self.token)
        success, _ = self.ledger.call(self.alice, target.address, b"", value=1)
        self.assertFalse(success)

    def test_allowances(self) -> None:
        with self.assertRaises(InsufficientAllowance):
            self.ledger.transfer_from(self.token, self.bob, self.alice, self.bob, 1)
        self.ledger.approve(self.token, self.alice, self.bob, 30)
        self.ledger.transfer_from(self.token, self.bob, self.alice, self.bob, 20)
        self.assertEqual(self.ledger.allowance(self.token, self.alice, self.bob), 10)

        self.ledger.approve(self.token, self.alice, self.bob, MAX_UINT256)
        self.ledger.transfer_from(self.token, self.bob, self.alice, self.bob, 20)
        self.assertEqual(self.ledger.allowance(self.token, self.alice, self.bob), MAX_UINT256)
        self.assertEqual(self.ledger.balance_of(self.token, self.bob), 40)

    def test_contract_at_unknown_address(self) -> None:
        with self.assertRaises(Revert):
            self.ledger.contract_at(self.bob)


if __name__ == "__main__":
    unittest.main()
