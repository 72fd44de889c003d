"""Relay command dispatcher.

Builds the outbound command strings and writes them through the transport.
Send failures propagate; the gateway decides how to log them.
"""

from constants import CMD_ALL_OFF, CMD_ALL_ON, CMD_STATUS, RELAY_IDS


def relay_command(relay_id: int, on: bool) -> str:
    if relay_id not in RELAY_IDS:
        raise ValueError(f"Invalid relay id {relay_id} (expected 1-4)")
    return f"RELAY{relay_id}_{'ON' if on else 'OFF'}"


class RelayController:
    def __init__(self, transport):
        self.transport = transport

    async def toggle(self, relay_id: int, current: bool) -> bool:
        """Send the command that flips ``relay_id`` and return its new state."""
        new_state = not current
        await self.transport.send(relay_command(relay_id, new_state))
        return new_state

    async def set_relay(self, relay_id: int, on: bool) -> bool:
        await self.transport.send(relay_command(relay_id, on))
        return on

    async def turn_all_on(self):
        await self.transport.send(CMD_ALL_ON)

    async def turn_all_off(self):
        await self.transport.send(CMD_ALL_OFF)

    async def get_status(self):
        """Ask the pod to echo its relay state; the reply arrives as a STATE: line."""
        await self.transport.send(CMD_STATUS)
