from __future__ import annotations

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sqlbroker.services.crypto.envelope import KEY_SIZE
from sqlbroker.services.crypto.utils import hex_encode


def main() -> int:
    print(hex_encode(AESGCM.generate_key(bit_length=KEY_SIZE * 8)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
