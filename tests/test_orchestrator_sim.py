"""Simulation tests for the connection workflow against a fake bluetoothctl."""
from __future__ import annotations

import io
import unittest
from typing import Iterable, List, Optional, Tuple

from rich.console import Console

from zmkctl.cancel import CancelToken
from zmkctl.config import ConnectConfig
from zmkctl.models.device_state import DeviceState
from zmkctl.models.step_result import Outcome
from zmkctl.orchestrator import ConnectionOrchestrator, MenuKind, menu_kind

ADDRESS = "E0:65:35:C3:FD:33"


class _FakeBluetooth:
    """In-memory peripheral that reacts to commands roughly like bluez does."""

    def __init__(
        self,
        *,
        exists: bool = False,
        paired: bool = False,
        bonded: bool = False,
        trusted: bool = False,
        connected: bool = False,
        visible: bool = True,
        pair_output: str = "Pairing successful",
        bond_on_pair: bool = True,
        trust_sticks: bool = True,
        connect_results: Iterable[bool] = (True,),
        remove_ok: bool = True,
    ) -> None:
        self.exists = exists
        self.paired = paired
        self.bonded = bonded
        self.trusted = trusted
        self.connected = connected
        self.visible = visible
        self.pair_output = pair_output
        self.bond_on_pair = bond_on_pair
        self.trust_sticks = trust_sticks
        self._connect_results = list(connect_results)
        self.remove_ok = remove_ok
        self.actions: List[Tuple[str, Optional[DeviceState]]] = []

    def _snapshot(self) -> DeviceState:
        return DeviceState(
            exists=self.exists,
            paired=self.paired,
            bonded=self.bonded,
            trusted=self.trusted,
            connected=self.connected,
            name="Dactyl Right" if self.exists else None,
        )

    def names(self) -> List[str]:
        return [name for name, _ in self.actions]

    async def query_device_state(self, address: str) -> DeviceState:
        state = self._snapshot()
        self.actions.append(("query", state))
        return state

    async def is_visible(self, address: str) -> bool:
        self.actions.append(("devices", None))
        return self.visible

    async def scan(self, timeout: float = 5.0) -> None:
        self.actions.append(("scan", None))
        if self.visible:
            self.exists = True

    async def trust(self, address: str) -> bool:
        self.actions.append(("trust", None))
        if self.trust_sticks:
            self.trusted = True
        return True

    async def pair(self, address: str) -> str:
        self.actions.append(("pair", None))
        if "Pairing successful" in self.pair_output:
            self.paired = True
            self.bonded = self.bond_on_pair
        return self.pair_output

    async def connect(self, address: str) -> bool:
        self.actions.append(("connect", None))
        result = self._connect_results.pop(0) if self._connect_results else False
        if result:
            self.connected = True
        return result

    async def disconnect(self, address: str) -> bool:
        self.actions.append(("disconnect", None))
        was_connected = self.connected
        self.connected = False
        return was_connected

    async def remove(self, address: str) -> bool:
        self.actions.append(("remove", None))
        if self.remove_ok:
            self.exists = self.paired = self.bonded = self.trusted = self.connected = False
        return self.remove_ok


class _SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, duration: float) -> bool:
        self.calls.append(duration)
        return False


def _make(
    fake: _FakeBluetooth,
    *,
    answers: Iterable[str] = (),
    **config_overrides,
) -> Tuple[ConnectionOrchestrator, io.StringIO, _SleepRecorder]:
    config_values = dict(
        address=ADDRESS,
        name="Dactyl Right",
        max_scan_attempts=4,
        max_pair_attempts=3,
        max_connect_attempts=3,
    )
    config_values.update(config_overrides)
    replies = list(answers)

    def prompt(_: str) -> str:
        if not replies:
            raise EOFError
        return replies.pop(0)

    buffer = io.StringIO()
    sleeper = _SleepRecorder()
    orchestrator = ConnectionOrchestrator(
        fake,
        ConnectConfig(**config_values),
        console=Console(file=buffer, width=120),
        prompt=prompt,
        sleep=sleeper,
    )
    return orchestrator, buffer, sleeper


class MenuTest(unittest.IsolatedAsyncioTestCase):
    def test_menu_kind_follows_state(self) -> None:
        self.assertIs(menu_kind(DeviceState()), MenuKind.UNKNOWN)
        self.assertIs(menu_kind(DeviceState(exists=True)), MenuKind.KNOWN)
        self.assertIs(menu_kind(DeviceState(exists=True, connected=True)), MenuKind.CONNECTED)

    async def test_unknown_device_offers_search_and_exit_only(self) -> None:
        fake = _FakeBluetooth(exists=False)
        orchestrator, buffer, _ = _make(fake, answers=["2"])

        result = await orchestrator.run()

        output = buffer.getvalue()
        self.assertIs(result.outcome, Outcome.EXIT_OK)
        self.assertIn("1) Search for keyboard and pair", output)
        self.assertIn("2) Exit", output)
        self.assertNotIn("3)", output)
        self.assertNotIn("Disconnect", output)
        self.assertEqual(fake.names(), ["query"])

    async def test_invalid_choice_fails(self) -> None:
        fake = _FakeBluetooth(exists=True)
        orchestrator, buffer, _ = _make(fake, answers=["9"])

        result = await orchestrator.run()

        self.assertIs(result.outcome, Outcome.EXIT_FAIL)
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Invalid choice", buffer.getvalue())

    async def test_closed_stdin_fails_closed(self) -> None:
        fake = _FakeBluetooth(exists=True, connected=True)
        orchestrator, _, _ = _make(fake, answers=[])

        result = await orchestrator.run()

        self.assertTrue(result.failed)
        self.assertNotIn("disconnect", fake.names())

    async def test_connected_device_can_be_disconnected(self) -> None:
        fake = _FakeBluetooth(exists=True, paired=True, bonded=True, trusted=True, connected=True)
        orchestrator, buffer, _ = _make(fake, answers=["2"])

        result = await orchestrator.run()

        self.assertIs(result.outcome, Outcome.EXIT_OK)
        self.assertIn("disconnect", fake.names())
        self.assertIn("Disconnected from Dactyl Right", buffer.getvalue())
        self.assertIn("Current status:", buffer.getvalue())

    async def test_failed_remove_from_menu_is_fatal(self) -> None:
        fake = _FakeBluetooth(exists=True, remove_ok=False)
        orchestrator, buffer, _ = _make(fake, answers=["2"])

        result = await orchestrator.run()

        self.assertTrue(result.failed)
        self.assertIn("Remove failed", buffer.getvalue())
        self.assertNotIn("scan", fake.names())


class ScanLoopTest(unittest.IsolatedAsyncioTestCase):
    async def test_stops_at_first_sighting(self) -> None:
        fake = _FakeBluetooth(visible=True)
        orchestrator, _, sleeper = _make(fake)

        result = await orchestrator.scan_loop()

        self.assertTrue(result.should_continue)
        self.assertEqual(fake.names().count("scan"), 1)
        self.assertEqual(sleeper.calls, [])

    async def test_gives_up_after_max_attempts(self) -> None:
        fake = _FakeBluetooth(visible=False)
        orchestrator, buffer, sleeper = _make(fake, max_scan_attempts=5, scan_wait=6.0)

        result = await orchestrator.scan_loop()

        self.assertTrue(result.failed)
        self.assertEqual(fake.names().count("scan"), 5)
        self.assertEqual(sleeper.calls, [6.0] * 4)
        self.assertIn("Device not found after 5 attempts", buffer.getvalue())
        self.assertIn("Battery is not depleted", buffer.getvalue())

    async def test_cancelled_token_stops_scanning(self) -> None:
        fake = _FakeBluetooth(visible=False)
        orchestrator, _, _ = _make(fake)
        orchestrator.token.cancel()

        result = await orchestrator.scan_loop()

        self.assertTrue(result.failed)
        self.assertEqual(fake.names(), [])


class PairLoopTest(unittest.IsolatedAsyncioTestCase):
    async def test_unpaired_state_is_removed_before_trust_or_pair(self) -> None:
        fake = _FakeBluetooth(exists=True, pair_output="Failed to pair: org.bluez.Error.AuthenticationFailed")
        orchestrator, _, _ = _make(fake, max_pair_attempts=4)

        result = await orchestrator.pair_loop()

        self.assertTrue(result.failed)
        actions = fake.actions
        checked = 0
        for index, (name, state) in enumerate(actions[:-1]):
            if name != "query" or state is None or state.paired:
                continue
            following = [n for n, _ in actions[index + 1:] if n not in ("query", "devices")]
            if following:
                self.assertEqual(following[0], "remove")
                checked += 1
        self.assertEqual(checked, 4)

    async def test_pair_attempts_are_bounded(self) -> None:
        fake = _FakeBluetooth(exists=True, pair_output="Failed to pair: org.bluez.Error.AlreadyExists")
        orchestrator, buffer, sleeper = _make(fake, max_pair_attempts=3, pair_retry_wait=3.0)

        result = await orchestrator.pair_loop()

        self.assertTrue(result.failed)
        self.assertEqual(fake.names().count("pair"), 3)
        self.assertEqual(sleeper.calls.count(3.0), 2)
        output = buffer.getvalue()
        self.assertIn("AlreadyExists but is not properly paired", output)
        self.assertIn("Could not establish proper pairing after 3 attempts", output)
        self.assertIn("settings_reset", output)

    async def test_successful_pair_needs_bond_confirmation(self) -> None:
        fake = _FakeBluetooth(exists=True, bond_on_pair=False)
        orchestrator, buffer, _ = _make(fake, max_pair_attempts=2)

        result = await orchestrator.pair_loop()

        # paired (but never bonded) is enough to move on to connecting
        self.assertTrue(result.should_continue)
        self.assertEqual(fake.names().count("pair"), 2)
        self.assertIn("Paired but not bonded", buffer.getvalue())

    async def test_healthy_device_skips_pairing(self) -> None:
        fake = _FakeBluetooth(exists=True, paired=True, bonded=True, trusted=True)
        orchestrator, _, _ = _make(fake)

        result = await orchestrator.pair_loop()

        self.assertTrue(result.should_continue)
        self.assertEqual(fake.names(), ["query", "query"])

    async def test_untrusted_bonded_device_is_trusted_without_remove(self) -> None:
        fake = _FakeBluetooth(exists=True, paired=True, bonded=True, trusted=False)
        orchestrator, _, _ = _make(fake)

        result = await orchestrator.pair_loop()

        self.assertTrue(result.should_continue)
        self.assertNotIn("remove", fake.names())
        self.assertLess(fake.names().index("trust"), fake.names().index("pair"))


class ConnectLoopTest(unittest.IsolatedAsyncioTestCase):
    async def test_connected_but_untrusted_is_fatal_without_retry(self) -> None:
        fake = _FakeBluetooth(exists=True, paired=True, bonded=True, trusted=False, connect_results=[True, True, True])
        orchestrator, buffer, _ = _make(fake)

        result = await orchestrator.connect_loop()

        self.assertTrue(result.failed)
        self.assertEqual(fake.names().count("connect"), 1)
        self.assertIn("Trusted", result.reason)
        output = buffer.getvalue()
        self.assertIn("Connected but missing required states", output)
        self.assertIn("Trusted: no (need: yes)", output)

    async def test_connect_retries_are_bounded(self) -> None:
        fake = _FakeBluetooth(exists=True, paired=True, bonded=True, trusted=True, connect_results=[])
        orchestrator, buffer, sleeper = _make(fake, max_connect_attempts=3, connect_retry_wait=2.0)

        result = await orchestrator.connect_loop()

        self.assertTrue(result.failed)
        self.assertEqual(fake.names().count("connect"), 3)
        self.assertEqual(sleeper.calls, [2.0, 2.0])
        self.assertIn("sudo systemctl restart bluetooth", buffer.getvalue())

    async def test_second_attempt_success(self) -> None:
        fake = _FakeBluetooth(exists=True, paired=True, bonded=True, trusted=True, connect_results=[False, True])
        orchestrator, buffer, _ = _make(fake)

        result = await orchestrator.connect_loop()

        self.assertIs(result.outcome, Outcome.EXIT_OK)
        self.assertEqual(fake.names().count("connect"), 2)
        self.assertIn("SUCCESS", buffer.getvalue())


class FullWorkflowTest(unittest.IsolatedAsyncioTestCase):
    async def test_fresh_device_reaches_connected(self) -> None:
        fake = _FakeBluetooth(exists=False, visible=True)
        orchestrator, buffer, _ = _make(fake, answers=["1"])

        result = await orchestrator.run()

        self.assertIs(result.outcome, Outcome.EXIT_OK)
        self.assertEqual(result.exit_code, 0)
        names = fake.names()
        self.assertLess(names.index("scan"), names.index("pair"))
        self.assertLess(names.index("pair"), names.index("connect"))
        self.assertIn("SUCCESS", buffer.getvalue())

    async def test_remove_and_repair_from_connected_menu(self) -> None:
        fake = _FakeBluetooth(exists=True, paired=True, bonded=True, trusted=True, connected=True)
        orchestrator, _, sleeper = _make(fake, answers=["3"], settle=2.0)

        result = await orchestrator.run()

        self.assertIs(result.outcome, Outcome.EXIT_OK)
        names = fake.names()
        self.assertEqual(names[1:3], ["disconnect", "remove"])
        self.assertEqual(sleeper.calls[0], 2.0)
        self.assertIn("pair", names)

    async def test_default_sleep_uses_token(self) -> None:
        fake = _FakeBluetooth(visible=False)
        token = CancelToken()
        orchestrator = ConnectionOrchestrator(
            fake,
            ConnectConfig(address=ADDRESS, max_scan_attempts=2, scan_wait=0.0),
            console=Console(file=io.StringIO()),
            token=token,
        )

        result = await orchestrator.scan_loop()

        self.assertTrue(result.failed)
        self.assertEqual(fake.names().count("scan"), 2)


if __name__ == "__main__":
    unittest.main()
