import unittest

from _support import VaultFixture
from trade_vault.errors import InsufficientBalance, Revert, UnsupportedAsset, ValueMismatch
from trade_vault.ledger import NATIVE_ASSET


class LendingAdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.fx = VaultFixture()
        self.vault = self.fx.vault
        self.ledger = self.fx.ledger
        self.pool = self.fx.pool
        self.ledger.burn(self.fx.usdc, self.vault.address, 1_000_000 - 100)

    def test_supply_more_than_held_fails(self) -> None:
        with self.assertRaises(InsufficientBalance):
            self.vault.aave_supply(self.fx.manager, self.fx.usdc, 101)
        self.assertEqual(self.pool.deposits(self.fx.usdc, self.vault.address), 0)
        self.assertEqual(self.ledger.events("AaveSupply"), [])

    def test_supply_exact_balance(self) -> None:
        self.vault.aave_supply(self.fx.manager, self.fx.usdc, 100)
        self.assertEqual(self.ledger.balance_of(self.fx.usdc, self.vault.address), 0)
        self.assertEqual(self.pool.deposits(self.fx.usdc, self.vault.address), 100)
        # exact approval, fully consumed
        self.assertEqual(self.ledger.allowance(self.fx.usdc, self.vault.address, self.pool.address), 0)
        self.assertEqual(self.ledger.events("AaveSupply")[0].args, {"asset": self.fx.usdc, "amount": 100})

    def test_supply_forwards_referral_code(self) -> None:
        self.vault.set_aave_referral_code(self.fx.manager, 42)
        self.vault.aave_supply(self.fx.manager, self.fx.usdc, 10)
        self.assertEqual(self.ledger.storage(self.pool.address)["last_referral"], 42)

    def test_referral_code_must_fit_uint16(self) -> None:
        for code in (-1, 2**16):
            with self.subTest(code=code), self.assertRaises(Revert):
                self.vault.set_aave_referral_code(self.fx.manager, code)

    def test_withdraw(self) -> None:
        self.vault.aave_supply(self.fx.manager, self.fx.usdc, 100)
        self.vault.aave_withdraw(self.fx.manager, self.fx.usdc, 60)
        self.assertEqual(self.ledger.balance_of(self.fx.usdc, self.vault.address), 60)
        self.assertEqual(self.pool.deposits(self.fx.usdc, self.vault.address), 40)
        self.assertEqual(self.ledger.events("AaveWithdraw")[0].args, {"asset": self.fx.usdc, "amount": 60})

    def test_pool_failure_propagates(self) -> None:
        with self.assertRaises(Revert) as ctx:
            self.vault.aave_withdraw(self.fx.manager, self.fx.usdc, 1)
        self.assertEqual(ctx.exception.message, "32")
        self.assertEqual(self.ledger.events("AaveWithdraw"), [])

    def test_borrow_token(self) -> None:
        self.vault.aave_borrow(self.fx.manager, self.fx.usdc, 500, 2)
        self.assertEqual(self.ledger.balance_of(self.fx.usdc, self.vault.address), 600)
        self.assertEqual(self.pool.debt(self.fx.usdc, self.vault.address), 500)
        self.assertEqual(self.ledger.storage(self.pool.address)["last_rate_mode"], 2)
        self.assertEqual(self.ledger.events("AaveBorrow")[0].args, {"asset": self.fx.usdc, "amount": 500})

    def test_borrow_native_is_unsupported(self) -> None:
        for amount, rate_mode in ((0, 1), (1, 2), (10**18, 1)):
            with self.subTest(amount=amount, rate_mode=rate_mode), self.assertRaises(UnsupportedAsset):
                self.vault.aave_borrow(self.fx.manager, NATIVE_ASSET, amount, rate_mode)
        upper = "0x" + "E" * 40
        with self.assertRaises(UnsupportedAsset):
            self.vault.aave_borrow(self.fx.manager, upper, 1, 2)

    def test_repay_token(self) -> None:
        self.vault.aave_borrow(self.fx.manager, self.fx.usdc, 500, 2)
        self.vault.aave_repay(self.fx.manager, self.fx.usdc, 300, 2)
        self.assertEqual(self.pool.debt(self.fx.usdc, self.vault.address), 200)
        self.assertEqual(self.ledger.events("AaveRepay")[0].args, {"asset": self.fx.usdc, "amount": 300})

    def test_repay_native_with_exact_value(self) -> None:
        self.ledger.fund_native(self.fx.manager, 10**18)
        self.vault.aave_repay(self.fx.manager, NATIVE_ASSET, 10**17, 2, value=10**17)
        self.assertEqual(self.ledger.native_balance(self.fx.manager), 9 * 10**17)
        self.assertEqual(self.ledger.native_balance(self.vault.address), 0)
        self.assertEqual(self.ledger.native_balance(self.fx.gateway.address), 10**17)
        self.assertEqual(self.ledger.storage(self.fx.gateway.address)[self.vault.address], 10**17)

    def test_repay_native_value_mismatch_refunds(self) -> None:
        self.ledger.fund_native(self.fx.manager, 10**18)
        for value, amount in ((10**17, 10**17 + 1), (10**17, 10**17 - 1), (0, 1)):
            with self.subTest(value=value, amount=amount), self.assertRaises(ValueMismatch):
                self.vault.aave_repay(self.fx.manager, NATIVE_ASSET, amount, 2, value=value)
        self.assertEqual(self.ledger.native_balance(self.fx.manager), 10**18)
        self.assertEqual(self.ledger.native_balance(self.vault.address), 0)
        self.assertEqual(self.ledger.events("AaveRepay"), [])

    def test_repay_token_rejects_attached_value(self) -> None:
        self.vault.aave_borrow(self.fx.manager, self.fx.usdc, 500, 2)
        self.ledger.fund_native(self.fx.manager, 10**18)
        with self.assertRaises(ValueMismatch):
            self.vault.aave_repay(self.fx.manager, self.fx.usdc, 300, 2, value=1)
        self.assertEqual(self.ledger.native_balance(self.fx.manager), 10**18)
        self.assertEqual(self.ledger.native_balance(self.vault.address), 0)
        self.assertEqual(self.pool.debt(self.fx.usdc, self.vault.address), 500)
        self.assertEqual(self.ledger.events("AaveRepay"), [])

    def test_position_sizes_follow_input_order(self) -> None:
        self.vault.aave_supply(self.fx.manager, self.fx.usdc, 70)
        sizes = self.vault.get_aave_position_sizes([self.fx.weth, self.fx.usdc, self.fx.weth])
        self.assertEqual(sizes, [0, 70, 0])
        self.assertEqual(self.vault.get_aave_position_sizes([]), [])

    def test_asset_sizes_include_native(self) -> None:
        self.ledger.fund_native(self.vault.address, 5)
        sizes = self.vault.get_assets_sizes([self.fx.usdc, NATIVE_ASSET, self.fx.weth])
        self.assertEqual(sizes, [100, 5, 0])


if __name__ == "__main__":
    unittest.main()
