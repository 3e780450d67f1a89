import os
import sys
from types import SimpleNamespace
from unittest import mock

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from macrobot.config.schema import MT5Config
from macrobot.execution import mt5_exec
from macrobot.execution.mt5_exec import MT5Broker

import unittest


class FakeTerminal:
    """Stand-in for the MetaTrader5 module with one BTCUSD symbol."""

    TRADE_ACTION_DEAL = 1
    TRADE_ACTION_SLTP = 6
    ORDER_TYPE_BUY = 0
    ORDER_TYPE_SELL = 1
    ORDER_TIME_GTC = 0
    ORDER_FILLING_IOC = 1
    POSITION_TYPE_BUY = 0
    TRADE_RETCODE_DONE = 10009

    def __init__(self):
        self.requests = []
        self.reject = False
        self.symbol_missing = False
        self.open_tickets = {777}

    def initialize(self, **kwargs):
        return True

    def symbol_select(self, symbol, enable):
        return True

    def shutdown(self):
        pass

    def last_error(self):
        return (1, 'error')

    def symbol_info(self, symbol):
        if self.symbol_missing:
            return None
        return SimpleNamespace(trade_contract_size=1.0, volume_step=0.01, volume_min=0.01)

    def symbol_info_tick(self, symbol):
        return SimpleNamespace(bid=59_990.0, ask=60_010.0, time_msc=1)

    def order_send(self, request):
        self.requests.append(request)
        if self.reject:
            return SimpleNamespace(retcode=10004, comment='Requote')
        return SimpleNamespace(retcode=self.TRADE_RETCODE_DONE, comment='done',
                               order=777, volume=request.get('volume', 0.0), price=request.get('price', 0.0))

    def positions_get(self, ticket):
        if ticket not in self.open_tickets:
            return ()
        return [SimpleNamespace(ticket=ticket, type=self.POSITION_TYPE_BUY, volume=3.33, price_open=60_010.0)]


class TestMT5Broker(unittest.TestCase):
    def setUp(self) -> None:
        self.terminal = FakeTerminal()
        patcher = mock.patch.object(mt5_exec, 'mt5', self.terminal)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.broker = MT5Broker(MT5Config(login=1, server='demo'))

    def test_open_protect_and_close(self) -> None:
        opened = self.broker.open_position('long', 3.3333)
        self.assertTrue(opened.ok)
        self.assertEqual(opened.data.position_id, '777')
        self.assertEqual(opened.data.open_price, 60_010.0)
        self.assertAlmostEqual(self.terminal.requests[0]['volume'], 3.33)

        self.assertTrue(self.broker.attach_target_order('777', 61_200.0, 3.33).ok)
        self.assertTrue(self.broker.attach_stop_order('777', 59_880.0, 3.33).ok)
        sltp = self.terminal.requests[-1]
        self.assertEqual(sltp['action'], FakeTerminal.TRADE_ACTION_SLTP)
        self.assertEqual((sltp['sl'], sltp['tp']), (59_880.0, 61_200.0))

        self.assertTrue(self.broker.close_position('777').ok)
        close = self.terminal.requests[-1]
        self.assertEqual(close['type'], FakeTerminal.ORDER_TYPE_SELL)
        self.assertEqual(close['price'], 59_990.0)

    def test_rejection_is_returned_as_error(self) -> None:
        self.terminal.reject = True
        opened = self.broker.open_position('short', 1.0)
        self.assertFalse(opened.ok)
        self.assertEqual(opened.error.code, 'rejected')
        self.assertEqual(opened.error.status_code, 10004)

    def test_missing_symbol_info_fails_without_sending(self) -> None:
        self.terminal.symbol_missing = True
        opened = self.broker.open_position('long', 3.3333)
        self.assertFalse(opened.ok)
        self.assertEqual(opened.error.code, 'symbol')
        self.assertEqual(self.terminal.requests, [])

    def test_get_position(self) -> None:
        held = self.broker.get_position('777')
        self.assertTrue(held.ok)
        self.assertEqual(held.data.open_price, 60_010.0)
        self.assertAlmostEqual(held.data.quantity, 3.33)
        # Closed by the terminal's own stop-loss or take-profit
        self.terminal.open_tickets.clear()
        gone = self.broker.get_position('777')
        self.assertTrue(gone.ok)
        self.assertIsNone(gone.data)

    def test_missing_package(self) -> None:
        with mock.patch.object(mt5_exec, 'mt5', None):
            quote = MT5Broker(MT5Config()).get_current_price()
        self.assertFalse(quote.ok)
        self.assertEqual(quote.error.code, 'unavailable')


if __name__ == '__main__':
    unittest.main()
