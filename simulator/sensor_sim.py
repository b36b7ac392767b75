#!/usr/bin/env python3
"""
sensor_sim.py - Spice purity sensor simulator.

Emulates the ESP32 node: pushes BME680 / MQ-3 / MQ-135 readings with a
device-side purity estimate to the gateway, and can commit the latest
reading as an anchored batch.

Usage:
    python sensor_sim.py --scenario stream  --rate 1 --duration 60
    python sensor_sim.py --scenario warmup  --duration 0
    python sensor_sim.py --scenario commit  --batch-id TURM2025-01 --spice Turmeric
    python sensor_sim.py --scenario adulterated --rate 2 --duration 30
"""
import argparse
import random
import sys
import time

import requests

GATEWAY = "http://localhost:3000"
DEVICE_ID = "esp32-spicesniff-01"
SESSION = requests.Session()
SESSION.headers["Content-Type"] = "application/json"


# Baseline sensor ratios for a pure sample, per spice
SPICES = {
    "Turmeric": {"mq3_rsr0": 0.82, "mq135_rsr0": 0.91, "gas_kohm": 48.0},
    "Chilli":   {"mq3_rsr0": 0.74, "mq135_rsr0": 0.86, "gas_kohm": 41.0},
    "Cumin":    {"mq3_rsr0": 0.69, "mq135_rsr0": 0.80, "gas_kohm": 37.5},
    "Pepper":   {"mq3_rsr0": 0.77, "mq135_rsr0": 0.88, "gas_kohm": 44.0},
}


def grade_for(purity: float) -> str:
    if purity >= 90:
        return "A"
    if purity >= 75:
        return "B"
    if purity >= 60:
        return "C"
    return "REJECT"


def reading(spice: str, adulteration: float = 0.0, available: bool = True) -> dict:
    """One sample. adulteration in [0, 1] drags the gas ratios away from baseline."""
    base = SPICES[spice]
    drift = 1.0 + adulteration * random.uniform(0.25, 0.45)
    mq3 = round(base["mq3_rsr0"] * drift * random.uniform(0.98, 1.02), 3)
    mq135 = round(base["mq135_rsr0"] * drift * random.uniform(0.98, 1.02), 3)
    gas = round(base["gas_kohm"] / drift * random.uniform(0.97, 1.03), 2)
    deviation = abs(mq3 / base["mq3_rsr0"] - 1) + abs(mq135 / base["mq135_rsr0"] - 1)
    purity = round(max(0.0, min(100.0, 100.0 - deviation * 120)), 1)
    return {
        "deviceId": DEVICE_ID,
        "temp": round(random.uniform(24.0, 29.0), 1),
        "rel_hum": round(random.uniform(40.0, 60.0), 1),
        "gas_kohm": gas,
        "mq3_rsr0": mq3,
        "mq135_rsr0": mq135,
        "available": available,
        "purity": purity if available else None,
        "grade": grade_for(purity) if available else None,
        "spice": spice,
    }


def push(sample: dict) -> None:
    resp = SESSION.post(f"{GATEWAY}/api/ingest", json=sample, timeout=10)
    resp.raise_for_status()


def run_stream(rate: float, duration: int, spice: str, adulteration: float = 0.0):
    """Scenario A: steady stream of readings."""
    print(f"[stream] {spice} {rate} readings/s for {duration}s adulteration={adulteration}")
    n, ok, fail = 0, 0, 0
    deadline = time.monotonic() + duration
    interval = 1.0 / rate

    while time.monotonic() < deadline:
        t0 = time.monotonic()
        try:
            push(reading(spice, adulteration))
            ok += 1
        except Exception as exc:
            fail += 1
            print(f"  FAIL: {exc}", file=sys.stderr)
        n += 1
        time.sleep(max(0, interval - (time.monotonic() - t0)))
        if n % 50 == 0:
            print(f"  pushed={n} ok={ok} fail={fail}")

    print(f"[stream] done: pushed={n} ok={ok} fail={fail}")


def run_warmup(spice: str):
    """Scenario B: sensor warm-up, five unavailable readings then valid ones."""
    print("[warmup] 5 unavailable readings, then 5 valid")
    for i in range(10):
        sample = reading(spice, available=i >= 5)
        push(sample)
        print(f"  available={sample['available']!s:5s} purity={sample['purity']}")
        time.sleep(0.5)


def run_commit(batch_id: str, spice: str):
    """Scenario C: push one valid reading and commit it as a batch."""
    push(reading(spice))
    resp = SESSION.post(f"{GATEWAY}/api/sensor/commit",
                        json={"batchId": batch_id, "spice": spice}, timeout=180)
    if resp.status_code != 200:
        print(f"  commit FAILED {resp.status_code}: {resp.text}", file=sys.stderr)
        sys.exit(1)
    body = resp.json()
    print(f"  committed batch={batch_id} cid={body['content_id']} tx={body['transaction_ref']}")

    check = SESSION.get(f"{GATEWAY}/batch/{batch_id}", timeout=60).json()
    print(f"  read back: spice={check['spice_kind']} purity={check['document']['sensor_data']['purity']}")


def main():
    global GATEWAY
    parser = argparse.ArgumentParser(description="Spice purity sensor simulator")
    parser.add_argument("--scenario", default="stream",
                        choices=["stream", "warmup", "commit", "adulterated"])
    parser.add_argument("--rate", type=float, default=1.0, help="Readings per second")
    parser.add_argument("--duration", type=int, default=60, help="Duration in seconds")
    parser.add_argument("--spice", default="Turmeric", choices=list(SPICES))
    parser.add_argument("--batch-id", default=f"TURM{time.strftime('%Y')}-{random.randint(1, 999):03d}")
    parser.add_argument("--gateway", default=GATEWAY)
    args = parser.parse_args()

    GATEWAY = args.gateway.rstrip("/")
    print(f"Gateway: {GATEWAY}  scenario={args.scenario}  spice={args.spice}")

    try:
        h = SESSION.get(f"{GATEWAY}/health", timeout=5).json()
        print(f"Connected - ledger={h.get('ledger_backend')} content={h.get('content_backend')}")
    except Exception as exc:
        print(f"Cannot reach gateway: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.scenario == "stream":
        run_stream(args.rate, args.duration, args.spice)
    elif args.scenario == "adulterated":
        run_stream(args.rate, args.duration, args.spice, adulteration=0.6)
    elif args.scenario == "warmup":
        run_warmup(args.spice)
    else:
        run_commit(args.batch_id, args.spice)


if __name__ == "__main__":
    main()
