import time
import subprocess
import httpx
import sys
import os
import signal

BASE_URL = "http://127.0.0.1:8000"
API_PREFIX = "/v1"
USER_ID = 900001
IDEMPOTENCY_KEY = "persistence-check"


def start_server(env=None):
    return subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "backend.app.main:app", "--host", "127.0.0.1", "--port", "8000"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env={**os.environ, **(env or {})},
    )


def stop_server(proc):
    proc.send_signal(signal.SIGTERM)
    proc.wait()


def wait_for_server(retries=10, delay=2):
    url = f"{BASE_URL}/health"
    print(f"Waiting for server at {url}...")
    for i in range(retries):
        try:
            resp = httpx.get(url)
            if resp.status_code == 200:
                print("✅ Server is up!")
                return True
        except httpx.ConnectError:
            pass
        time.sleep(delay)
    print("❌ Server failed to start.")
    return False


def adjust(amount):
    return httpx.post(
        f"{BASE_URL}{API_PREFIX}/admin/credits/users/{USER_ID}/adjustments",
        json={"amount": amount, "direction": "CREDIT", "reason": "Persistence check"},
        headers={"Idempotency-Key": IDEMPOTENCY_KEY},
    )


def run_verification():
    # 1. Start Server (First Run)
    print("\n--- [Step 1] Starting Server (Initial) ---")
    proc = start_server({"DB_ECHO": "True", "EXPIRATION_SWEEP_ENABLED": "False"})

    try:
        if not wait_for_server():
            server_logs = proc.communicate(timeout=2)
            print("Server Stdout:", server_logs[0].decode())
            print("Server Stderr:", server_logs[1].decode())
            raise Exception("Server start failed")

        # 2. Credit a wallet
        print("\n--- [Step 2] Crediting Wallet (Persistence Test) ---")
        resp = adjust("10.00")
        if resp.status_code == 201:
            print("✅ Wallet credited")
            print(resp.json())
        else:
            print(f"❌ Adjustment Failed: {resp.status_code} {resp.text}")
            raise Exception("Adjustment failed")
        balance_before = httpx.get(f"{BASE_URL}{API_PREFIX}/credits/users/{USER_ID}/wallet").json()["balance"]

    finally:
        print("\n--- [Step 3] Stopping Server ---")
        stop_server(proc)

    time.sleep(2)  # Wait for port release

    # 3. Restart Server
    print("\n--- [Step 4] Restarting Server (Verification) ---")
    proc2 = start_server({"EXPIRATION_SWEEP_ENABLED": "False"})

    try:
        if not wait_for_server():
            raise Exception("Server restart failed")

        # 4. Wallet survives the restart
        print("\n--- [Step 5] Reading Wallet (Post-Restart) ---")
        resp = httpx.get(f"{BASE_URL}{API_PREFIX}/credits/users/{USER_ID}/wallet")
        if resp.status_code == 200 and resp.json()["balance"] == balance_before:
            print(f"✅ Balance persisted: {balance_before}")
        else:
            print(f"❌ Wallet mismatch (Persistence Issue?): {resp.status_code} {resp.text}")
            raise Exception("Wallet not persisted")

        # 5. Idempotency keys survive the restart
        print("\n--- [Step 6] Replaying Idempotent Request ---")
        resp = adjust("10.00")
        after = httpx.get(f"{BASE_URL}{API_PREFIX}/credits/users/{USER_ID}/wallet").json()["balance"]
        if resp.status_code == 201 and after == balance_before:
            print("✅ Replay returned the original transaction")
        else:
            print(f"❌ Replay applied twice: {resp.status_code} balance={after}")
            raise Exception("Idempotent replay failed")

    finally:
        print("\n--- [Step 7] Stopping Server ---")
        stop_server(proc2)


if __name__ == "__main__":
    run_verification()
