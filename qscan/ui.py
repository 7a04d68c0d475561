from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeElapsedColumn, TimeRemainingColumn

from .config import RunConfig, ScanMode
from .models import ScanResult

# Result lines go to stdout, everything else to stderr so output can be piped
console = Console(highlight=False)
err_console = Console(stderr=True)

MODE_NAMES = {
    ScanMode.TCP_CONNECT: "TCP connect",
    ScanMode.PING: "ping",
    ScanMode.PING_THEN_TCP: "ping + TCP connect",
}


class ScannerUI:
    def __init__(self, out: Console = None, err: Console = None):
        self.console = out or console
        self.err_console = err or err_console

    def display_start(self, target_count: int, port_count: int, config: RunConfig):
        ports = "" if config.mode is ScanMode.PING else f", {port_count} port(s)"
        self.err_console.print(Panel.fit(
            f"[bold green]Starting {MODE_NAMES[config.mode]} scan of {target_count} target(s){ports}[/bold green]\n"
            f"[dim]batch {config.batch} | timeout {config.timeout} ms[/dim]",
            border_style="blue"
        ))

    def create_progress(self):
        return Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=self.err_console,
            transient=True
        )

    def show_result(self, line: str, result: ScanResult):
        style = "green" if result.state.positive else "dim"
        self.console.print(line, style=style, markup=False)

    def display_summary(self, duration: float, ping_results=None, tcp_results=None):
        if ping_results is not None:
            up = sum(1 for r in ping_results if r.state.positive)
            self.err_console.print(f"[bold]Hosts up: {up}/{len(ping_results)}[/bold]")
        if tcp_results is not None:
            found = sum(1 for r in tcp_results if r.state.positive)
            self.err_console.print(f"[bold]Open ports found: {found}/{len(tcp_results)}[/bold]")
        self.err_console.print(f"[bold]Scan completed in {duration:.2f} seconds.[/bold]")

    def show_message(self, msg, style="bold red"):
        self.err_console.print(f"[{style}]{escape(str(msg))}[/{style}]")

    def show_saved(self, filename):
        self.err_console.print(f"[dim]Results saved to {escape(str(filename))}[/dim]")
