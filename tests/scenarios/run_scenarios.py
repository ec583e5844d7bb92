#!/usr/bin/env python3
"""
Run all test scenarios
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from utils import Colors
from datetime import datetime

def main():
    print(f"\n{Colors.BOLD}{Colors.CYAN}")
    print("=" * 70)
    print("  CLUB OPS API - SCENARIO TESTS")
    print("=" * 70)
    print(f"{Colors.END}")
    print(f"  Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print()

    all_results = []

    # Run Front Desk Check-in
    try:
        from scenario_front_desk import run_scenario as run_front_desk
        print(f"\n{Colors.YELLOW}Running: Front Desk Check-in...{Colors.END}")
        result = run_front_desk()
        all_results.append(("Front Desk Check-in", result))
    except Exception as e:
        print(f"{Colors.RED}Error in Front Desk scenario: {e}{Colors.END}")

    # Run Checkout and Turnover
    try:
        from scenario_checkout import run_scenario as run_checkout
        print(f"\n{Colors.YELLOW}Running: Checkout and Turnover...{Colors.END}")
        result = run_checkout()
        all_results.append(("Checkout and Turnover", result))
    except Exception as e:
        print(f"{Colors.RED}Error in Checkout scenario: {e}{Colors.END}")

    # Final Summary
    print(f"\n{Colors.BOLD}{Colors.CYAN}")
    print("=" * 70)
    print("  ALL SCENARIOS COMPLETE")
    print("=" * 70)
    print(f"{Colors.END}")

    total_passed = sum(r.passed for _, r in all_results)
    total_failed = sum(r.failed for _, r in all_results)
    total_skipped = sum(r.skipped for _, r in all_results)

    print(f"\n  {'Scenario':<30} {'Passed':<10} {'Failed':<10} {'Skipped':<10}")
    print(f"  {'-'*60}")
    for name, result in all_results:
        print(f"  {name:<30} {Colors.GREEN}{result.passed:<10}{Colors.END} {Colors.RED}{result.failed:<10}{Colors.END} {Colors.YELLOW}{result.skipped:<10}{Colors.END}")
    print(f"  {'-'*60}")
    print(f"  {'TOTAL':<30} {Colors.GREEN}{total_passed:<10}{Colors.END} {Colors.RED}{total_failed:<10}{Colors.END} {Colors.YELLOW}{total_skipped:<10}{Colors.END}")

    if total_failed == 0:
        print(f"\n  {Colors.GREEN}{Colors.BOLD}✓ ALL SCENARIOS PASSED!{Colors.END}\n")
    else:
        print(f"\n  {Colors.RED}{Colors.BOLD}✗ {total_failed} TEST(S) FAILED{Colors.END}\n")

    sys.exit(0 if total_failed == 0 else 1)


if __name__ == "__main__":
    main()
