"""
Tiny PASS / FAIL runner shared by the test scripts when run directly
(`python3 testes/test_x.py`). Under pytest the test_* functions run on their own.
"""
import sys
import traceback

GREEN  = "\033[92m"
RED    = "\033[91m"
RESET  = "\033[0m"


def run_suite(title: str, tests: list) -> int:
    print(f"\n{title}\n" + "─" * len(title))
    failed = 0
    for test in tests:
        name = test.__name__
        try:
            test()
        except Exception as exc:
            failed += 1
            print(f"  {RED}FAIL{RESET}  {name} — {type(exc).__name__}: {exc}")
            traceback.print_exc(limit=3, file=sys.stdout)
        else:
            print(f"  {GREEN}PASS{RESET}  {name}")
    total = len(tests)
    colour = GREEN if failed == 0 else RED
    print(f"\n{colour}{total - failed}/{total} passed{RESET}")
    return 1 if failed else 0
