"""
Live scenario helpers for the Club Ops API
"""
import requests
from typing import Optional, Dict
from config import BASE_URL

# Colors for terminal output
class Colors:
    GREEN = '\033[92m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    BOLD = '\033[1m'
    END = '\033[0m'


def print_header(title: str):
    """Print section header"""
    print(f"\n{Colors.BOLD}{Colors.CYAN}{'='*60}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.CYAN}  {title}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.CYAN}{'='*60}{Colors.END}\n")


def print_test(name: str, passed: bool, message: str = ""):
    """Print test result"""
    status = f"{Colors.GREEN}✓ PASS{Colors.END}" if passed else f"{Colors.RED}✗ FAIL{Colors.END}"
    print(f"  {status} - {name}")
    if message and not passed:
        print(f"       {Colors.YELLOW}{message}{Colors.END}")


def print_info(message: str):
    """Print info message"""
    print(f"  {Colors.BLUE}ℹ {message}{Colors.END}")


def print_warning(message: str):
    """Print warning message"""
    print(f"  {Colors.YELLOW}⚠ {message}{Colors.END}")


class APIClient:
    """HTTP Client for API testing"""

    def __init__(self, base_url: str = BASE_URL):
        self.base_url = base_url
        self.token: Optional[str] = None

    def set_token(self, token: str):
        """Set authorization token"""
        self.token = token

    def _headers(self, extra_headers: Dict = None) -> Dict:
        """Build request headers"""
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if extra_headers:
            headers.update(extra_headers)
        return headers

    def get(self, endpoint: str, params: Dict = None) -> requests.Response:
        """GET request"""
        url = f"{self.base_url}{endpoint}"
        return requests.get(url, params=params, headers=self._headers())

    def post(self, endpoint: str, data: Dict = None) -> requests.Response:
        """POST request"""
        url = f"{self.base_url}{endpoint}"
        return requests.post(url, json=data, headers=self._headers())

    def login(self, account: Dict) -> bool:
        """Log in with a staff PIN and keep the bearer token"""
        response = self.post("/api/auth/login", account)
        if response.status_code != 200:
            return False
        self.set_token(response.json()["data"]["access_token"])
        return True


class TestResult:
    """Track test results"""

    def __init__(self):
        self.passed = 0
        self.failed = 0
        self.skipped = 0
        self.results = []

    def add_pass(self, name: str):
        self.passed += 1
        self.results.append({"name": name, "status": "pass"})
        print_test(name, True)

    def add_fail(self, name: str, message: str = ""):
        self.failed += 1
        self.results.append({"name": name, "status": "fail", "message": message})
        print_test(name, False, message)

    def add_skip(self, name: str, reason: str = ""):
        self.skipped += 1
        self.results.append({"name": name, "status": "skip", "reason": reason})
        print(f"  {Colors.YELLOW}⊘ SKIP{Colors.END} - {name}")
        if reason:
            print(f"       {Colors.YELLOW}{reason}{Colors.END}")

    def summary(self):
        """Print test summary"""
        total = self.passed + self.failed + self.skipped
        print(f"\n{Colors.BOLD}{'='*60}{Colors.END}")
        print(f"{Colors.BOLD}  TEST SUMMARY{Colors.END}")
        print(f"{'='*60}")
        print(f"  Total:   {total}")
        print(f"  {Colors.GREEN}Passed:  {self.passed}{Colors.END}")
        print(f"  {Colors.RED}Failed:  {self.failed}{Colors.END}")
        print(f"  {Colors.YELLOW}Skipped: {self.skipped}{Colors.END}")
        print(f"{'='*60}\n")

        if self.failed == 0:
            print(f"{Colors.GREEN}{Colors.BOLD}All tests passed! ✓{Colors.END}\n")
        else:
            print(f"{Colors.RED}{Colors.BOLD}Some tests failed! ✗{Colors.END}\n")

        return self.failed == 0


def error_code(response: requests.Response) -> Optional[str]:
    """Pull error_code out of an HTTPException detail"""
    try:
        detail = response.json().get("detail")
    except ValueError:
        return None
    if isinstance(detail, dict):
        return detail.get("error_code")
    return None
