"""
Run the meshcall signaling relay.
Run with: python -m meshcall
"""
import asyncio

from meshcall.relay import run_relay


def main():
    try:
        asyncio.run(run_relay())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
