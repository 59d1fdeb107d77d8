#!/usr/bin/env python3
"""
Invoice Intake - Main Entry Point

Usage:
    python main.py serve                       # Run the webhook and review API
    python main.py process invoice.pdf         # Process a local file
    python main.py anomalies                   # Anomaly report over completed invoices
    python main.py vendors                     # List vendor identities
    python main.py queue                       # Review queue summary
    python main.py config                      # Create sample config
    python main.py info                        # Show environment information
"""

import argparse
import asyncio
import json
import logging
import sys

from dotenv import load_dotenv

from invoice_intake.core.config_manager import ConfigurationManager
from invoice_intake.core.document_schema import DocumentKind

load_dotenv()

logger = logging.getLogger(__name__)


def setup_basic_logging():
    """Setup basic logging before configuration is loaded."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )


def show_environment_info(config):
    """Show environment information for debugging."""
    env_info = ConfigurationManager.get_environment_info()

    print("🔧 Environment Information:")
    print(f"   Python: {env_info['python_version']}")
    print(f"   Platform: {env_info['platform']}")
    print(f"   Working Directory: {env_info['working_directory']}")

    print("\n⚙️  Configuration:")
    print(f"   Database: {config['database']['path']}")
    print(f"   Tesseract: {'Enabled' if config['ocr']['tesseract_enabled'] else 'Disabled'}")
    print(f"   Azure Doc Intel: {'Enabled' if config['azure_document_intelligence']['enabled'] else 'Disabled'}")
    print(f"   Extraction Backend: {config['extraction']['backend']}")
    print(f"   Auto-approve Threshold: {config['routing']['auto_approve_threshold']}")
    print(f"   Intake Workers: {config['intake']['worker_count']}")
    print(f"   Save Handoffs: {'Yes' if config['output']['save_handoffs'] else 'No'}")


def run_serve_mode(config, host, port):
    """Run the FastAPI application."""
    import uvicorn
    from invoice_intake.web.app import create_app

    logger.info(f"🚀 Starting Invoice Intake API on {host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port, log_level=config['logging']['level'].lower())


async def run_process_mode(config, filename, kind):
    """Process a specific file."""
    from invoice_intake.core.pipeline_manager import DocumentPipeline

    logger.info(f"🚀 Processing {filename} as {kind.value}")
    pipeline = DocumentPipeline.from_config(config)
    try:
        outcome = await pipeline.process_file(filename, kind)
    finally:
        pipeline.close()

    logger.info("📋 Processing Summary:")
    logger.info(f"   📄 Document: {outcome.document_id}")
    logger.info(f"   ⏱️  Processing Time: {sum(outcome.stages.values()):.2f}s")
    logger.info(f"   📊 Weighted Confidence: {outcome.extraction.weighted_confidence:.2f}")
    logger.info(f"   ❌ Errors: {len(outcome.report.errors)}  ⚠️ Warnings: {len(outcome.report.warnings)}")
    if outcome.auto_finalized:
        logger.info(f"   ✅ Auto-finalized (handoff #{outcome.handoff_id})")
    else:
        logger.info(f"   👤 Review item #{outcome.review_item_id} ({outcome.decision.priority.value})")
    for finding in outcome.report.findings:
        logger.info(f"   - [{finding.severity.value}] {finding.field_path}: {finding.message}")


def run_anomalies_mode(config, client_id, as_json):
    from invoice_intake.analytics.anomaly_detection import AnomalyDetector, summarize
    from invoice_intake.core.data_persistence import IntakeRepository

    report = AnomalyDetector().detect_for_repository(IntakeRepository.from_config(config), client_id)
    if as_json:
        print(json.dumps({**report.to_dict(), 'summary': summarize(report)}, indent=2, default=str))
        return
    print(f"🔍 Checked {report.total_checked} document(s): {report.anomalies_found} anomalies, "
          f"risk {report.risk_score}/100")
    for anomaly in report.anomalies:
        print(f"   [{anomaly.severity.value}] {anomaly.title}: {anomaly.description}")


def run_vendors_mode(config, resolve, merge):
    from invoice_intake.core.data_persistence import IntakeRepository
    from invoice_intake.intake.vendor_resolver import VendorResolver

    repository = IntakeRepository.from_config(config)
    resolver = VendorResolver.from_config(config, repository)
    if resolve:
        summary = resolver.resolve_completed_documents()
        print(f"🔗 Checked {summary['checked']}, linked {summary['linked']}, created {summary['created']}")
    if merge:
        vendor = resolver.merge(*merge)
        print(f"🔗 Merged into #{vendor['id']} {vendor['primary_name']}")
    for vendor in repository.list_vendors():
        aliases = f" (aka {', '.join(vendor['alternate_names'])})" if vendor['alternate_names'] else ""
        print(f"   #{vendor['id']} {vendor['primary_name']}{aliases} "
              f"GSTIN={vendor['gstin'] or '-'} txns={vendor['transaction_count']} "
              f"total=₹{vendor['total_amount']:,.2f}")


def run_queue_mode(config, status, priority):
    from invoice_intake.core.data_persistence import IntakeRepository
    from invoice_intake.hitl.review_queue import ReviewQueueManager

    queue = ReviewQueueManager(IntakeRepository.from_config(config))
    summary = queue.queue_summary()
    print(f"📋 Active review items: {summary['active']}")
    print(f"   By status: {summary['by_status']}")
    print(f"   By priority: {summary['by_priority']}")
    for item in queue.list_items(status, priority):
        print(f"   #{item['id']} doc={item['document_id']} {item['priority']} {item['status']} "
              f"{item['assigned_to'] or ''}")


def main():
    """Main entry point."""
    setup_basic_logging()

    parser = argparse.ArgumentParser(
        description="Invoice Intake",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --port 8000            # Start the API
  python main.py process invoice.pdf          # Process a local invoice
  python main.py process pan.jpg --kind pan_card
  python main.py anomalies --json             # Anomaly report as JSON
  python main.py vendors --resolve            # Link completed invoices to vendors
  python main.py vendors --merge 3 7          # Merge vendor 7 into vendor 3
  python main.py queue --status pending       # Pending review items
  python main.py config                       # Create sample config
  python main.py info                         # Show environment info
        """
    )

    parser.add_argument(
        'mode',
        choices=['serve', 'process', 'anomalies', 'vendors', 'queue', 'config', 'info'],
        help='Command to run'
    )
    parser.add_argument('filename', nargs='?', help='File to process (required for process mode)')
    parser.add_argument('--kind', choices=[k.value for k in DocumentKind], default='invoice',
                        help='Document kind for process mode')
    parser.add_argument('--host', default='0.0.0.0', help='Bind address for serve mode')
    parser.add_argument('--port', type=int, default=8000, help='Port for serve mode')
    parser.add_argument('--client-id', type=int, help='Restrict anomaly detection to one client')
    parser.add_argument('--json', action='store_true', help='Print JSON output')
    parser.add_argument('--resolve', action='store_true', help='Resolve vendors for completed invoices')
    parser.add_argument('--merge', nargs=2, type=int, metavar=('KEEP_ID', 'DUPLICATE_ID'),
                        help='Merge two vendor identities')
    parser.add_argument('--status', help='Review status filter for queue mode')
    parser.add_argument('--priority', choices=['high', 'medium', 'low'], help='Priority filter for queue mode')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Override log level')

    args = parser.parse_args()

    if args.mode == 'config':
        ConfigurationManager.create_sample_env_file()
        return

    try:
        config = ConfigurationManager.load_configuration()
        if args.log_level:
            config['logging']['level'] = args.log_level
        ConfigurationManager.setup_logging(config)

        if args.mode == 'info':
            show_environment_info(config)
            return

        if args.mode == 'process' and not args.filename:
            logger.error("❌ Filename is required for process mode")
            parser.print_help()
            sys.exit(1)

        if args.mode == 'serve':
            run_serve_mode(config, args.host, args.port)
        elif args.mode == 'process':
            asyncio.run(run_process_mode(config, args.filename, DocumentKind(args.kind)))
        elif args.mode == 'anomalies':
            run_anomalies_mode(config, args.client_id, args.json)
        elif args.mode == 'vendors':
            run_vendors_mode(config, args.resolve, args.merge)
        elif args.mode == 'queue':
            run_queue_mode(config, args.status, args.priority)

    except KeyboardInterrupt:
        logger.info("🛑 Application stopped by user")
    except Exception as e:
        logger.error(f"❌ Application failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
