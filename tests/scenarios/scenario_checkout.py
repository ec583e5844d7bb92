#!/usr/bin/env python3
"""
Scenario: Checkout and Turnover

Checks a guest in, checks them out at the desk and turns the room around:
1. Staff checks a walk-in into a standard room
2. Looks the stay up by room number
3. Completes the checkout by hand
4. Cleans the room back to CLEAN with a cleaning batch
5. Admin reviews the audit log
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from utils import APIClient, TestResult, print_header, print_info, error_code, Colors
from config import TEST_ADMIN, TEST_STAFF, TEST_LANE
from scenario_front_desk import check_in_walk_in
from datetime import datetime


def run_scenario():
    """Run the checkout scenario"""
    print(f"\n{Colors.BOLD}{Colors.CYAN}")
    print("=" * 70)
    print("  SCENARIO: CHECKOUT AND TURNOVER")
    print(f"  Date: {datetime.now().strftime('%A, %d %B %Y')}")
    print("=" * 70)
    print(f"{Colors.END}")

    client = APIClient()
    result = TestResult()

    if not client.login(TEST_STAFF):
        result.add_fail("Staff login", "Cannot login - stopping scenario")
        return result
    result.add_pass("Staff logged in with PIN")

    # ===== STEP 1: Check-in =====
    print_header("STEP 1: Check a Guest In")

    assigned = check_in_walk_in(client, result, TEST_LANE, f"Checkout Guest {datetime.now():%H%M%S}")
    if not assigned:
        result.summary()
        return result

    room_id = assigned["resource_id"]

    # ===== STEP 2: Lookup =====
    print_header("STEP 2: Look Up the Stay")

    response = client.post("/api/checkout/manual-resolve", {"number": assigned["room_number"]})
    if response.status_code != 200:
        result.add_fail("Resolve stay by room number", f"{error_code(response)}: {response.text[:200]}")
        result.summary()
        return result
    stay = response.json()["data"]
    result.add_pass(f"Found stay #{stay['occupancy_id']} for {stay['customer_name']}")
    print_info(f"Scheduled checkout: {stay['scheduled_checkout_at']}")

    response = client.post("/api/checkout/manual-resolve", {})
    if error_code(response) == "LOOKUP_REQUIRED":
        result.add_pass("Empty lookup rejected")
    else:
        result.add_fail("Empty lookup", f"Status: {response.status_code}")

    # ===== STEP 3: Checkout =====
    print_header("STEP 3: Complete Checkout")

    response = client.post("/api/checkout/manual-complete", {"occupancy_id": stay["occupancy_id"]})
    if response.status_code == 200:
        result.add_pass("Checkout completed")
    else:
        result.add_fail("Manual checkout", f"{error_code(response)}: {response.text[:200]}")

    response = client.post("/api/checkout/manual-complete", {"occupancy_id": stay["occupancy_id"]})
    if response.status_code == 200 and response.json()["data"]["already_checked_out"]:
        result.add_pass("Second checkout reports the earlier result")
    else:
        result.add_fail("Second checkout", f"Status: {response.status_code}")

    # ===== STEP 4: Turnover =====
    print_header("STEP 4: Turn the Room Over")

    response = client.get("/api/rooms", params={"status": "DIRTY"})
    if response.status_code == 200 and any(r["id"] == room_id for r in response.json()["data"]):
        result.add_pass("Room is DIRTY after checkout")
    else:
        result.add_fail("Room status after checkout", f"Status: {response.status_code}")

    for target in ("CLEANING", "CLEAN"):
        response = client.post("/api/cleaning/batch", {"room_ids": [room_id], "target_status": target})
        if response.status_code == 200 and response.json()["data"]["summary"]["success"] == 1:
            result.add_pass(f"Room moved to {target}")
        else:
            result.add_fail(f"Cleaning batch to {target}", response.text[:200])

    # ===== STEP 5: Admin review =====
    print_header("STEP 5: Admin Review")

    admin = APIClient()
    if not admin.login(TEST_ADMIN):
        result.add_fail("Admin login", "Cannot login")
    else:
        response = admin.get("/api/admin/audit-log", params={"limit": 10})
        if response.status_code == 200:
            actions = [row["action"] for row in response.json()["data"]]
            result.add_pass("Audit log loaded")
            print_info(f"Recent actions: {', '.join(actions)}")
        else:
            result.add_fail("Audit log", f"Status: {response.status_code}")

    response = client.get("/api/admin/audit-log")
    if response.status_code == 403:
        result.add_pass("Audit log is admin only")
    else:
        result.add_fail("Audit log guard", f"Expected 403, got {response.status_code}")

    result.summary()
    return result


if __name__ == "__main__":
    scenario_result = run_scenario()
    sys.exit(0 if scenario_result.failed == 0 else 1)
